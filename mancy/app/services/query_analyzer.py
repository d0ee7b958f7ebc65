"""Decide whether a message needs external knowledge, and for what term."""

import re
from dataclasses import dataclass, field
from typing import Dict, List

# Query categories and the patterns that detect them
QUERY_PATTERNS: Dict[str, List[re.Pattern]] = {
    "wikipedia": [
        re.compile(r"(qué|que|quien|quién|como|cómo)\s+(es|fue|son|eran)\s+", re.IGNORECASE),
        re.compile(r"(historia|definición|significado)\s+de\s+", re.IGNORECASE),
        re.compile(r"quién\s+(inventó|descubrió|creó)", re.IGNORECASE),
        re.compile(r"\b(wikipedia|enciclopedia)\b", re.IGNORECASE),
    ],
    "books": [
        re.compile(r"(libro|novela|obra|autor|escritor|literatura)\b", re.IGNORECASE),
        re.compile(r"(leer|recomendar|sinopsis)\s+(de|sobre)\s+", re.IGNORECASE),
        re.compile(r"\b(publicó|escribió)\s+", re.IGNORECASE),
    ],
    "factual": [
        re.compile(r"(capital|país|ciudad|continente)\s+de\s+", re.IGNORECASE),
        re.compile(r"(población|habitantes|área)\s+", re.IGNORECASE),
        re.compile(r"(ciencia|tecnología|matemática|física)\s+", re.IGNORECASE),
    ],
}

# Leading phrases stripped from a query, longest first
LEADING_STOPWORDS = [
    "necesito saber", "acerca de", "por qué", "información",
    "podrías", "quién", "cuándo", "puedes", "sabes", "sobre",
    "dónde", "cómo", "dime", "qué",
]

FILLER_WORDS = frozenset({
    "el", "la", "los", "las", "un", "una", "de", "del", "en", "y", "o",
    "pero", "mas", "es", "fue", "son", "que", "qué",
})

_PUNCTUATION_RE = re.compile(r"[.,!?;:¿¡\"']")
_WHITESPACE_RE = re.compile(r"\s+")

MAX_TERM_WORDS = 4
MAX_TERM_CHARS = 80


@dataclass
class QueryAnalysis:
    types: List[str] = field(default_factory=lambda: ["general"])
    search_term: str = ""
    needs_external_info: bool = False
    confidence: float = 0.5


def extract_search_term(query: str) -> str:
    """Reduce a question to a short search term.

    Examples:
        >>> extract_search_term("¿Qué es la fotosíntesis?")
        'fotosíntesis'
        >>> extract_search_term("Dime sobre Gabriel García Márquez")
        'gabriel garcía márquez'
    """
    term = _PUNCTUATION_RE.sub("", query.lower())
    term = _WHITESPACE_RE.sub(" ", term).strip()

    stripped = True
    while stripped:
        stripped = False
        for phrase in LEADING_STOPWORDS:
            if term.startswith(phrase + " "):
                term = term[len(phrase) + 1:].lstrip()
                stripped = True

    words = [w for w in term.split(" ") if len(w) > 2 and w not in FILLER_WORDS]
    if words:
        return " ".join(words[:MAX_TERM_WORDS])
    return term[:MAX_TERM_CHARS]


class QueryAnalyzer:
    """Classify a message by the pattern families it matches."""

    def __init__(self, patterns: Dict[str, List[re.Pattern]] | None = None):
        self.patterns = patterns or QUERY_PATTERNS

    def analyze(self, query: str) -> QueryAnalysis:
        detected = [
            kind for kind, patterns in self.patterns.items()
            if any(p.search(query) for p in patterns)
        ]
        if not detected:
            return QueryAnalysis(search_term=extract_search_term(query))
        return QueryAnalysis(
            types=detected,
            search_term=extract_search_term(query),
            needs_external_info=True,
            confidence=0.8,
        )
