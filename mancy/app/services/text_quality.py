"""Normalization and validation of generated and inbound text.

``normalize`` is a pure, idempotent cleanup pass. ``validate`` decides
whether generated text is usable, driven by a declarative list of
corruption signatures, and repairs missing capitalization or terminal
punctuation instead of rejecting.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple

# Text mis-decoded as Latin-1/CP1252 from UTF-8. Applied longest key first.
ENCODING_REPAIRS: dict[str, str] = {
    "â€œ": '"', "â€\x9d": '"', "â€˜": "'", "â€™": "'",
    "â€¦": "...", "â€“": "–", "â€”": "—",
    "Ã¡": "á", "Ã©": "é", "Ã­": "í", "Ã³": "ó", "Ãº": "ú", "Ã±": "ñ",
    "Ã\x81": "Á", "Ã‰": "É", "Ã\x8d": "Í", "Ã“": "Ó", "Ãš": "Ú", "Ã‘": "Ñ",
    "Ã€": "À", "Ãˆ": "È", "ÃŒ": "Ì", "Ã’": "Ò", "Ã™": "Ù",
    "Ã£": "ã", "Ãµ": "õ", "Ã¼": "ü", "Ã§": "ç",
    "Â¿": "¿", "Â¡": "¡",
}
_REPAIR_KEYS = sorted(ENCODING_REPAIRS, key=len, reverse=True)
_REPAIR_RE = re.compile("|".join(re.escape(k) for k in _REPAIR_KEYS))

_CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F-\x9F]")
_INVISIBLE_RE = re.compile(r"[​-‏‪-‮⁠-⁩﻿]")
_WHITESPACE_RE = re.compile(r"\s+")
_DOUBLE_QUOTES_RE = re.compile(r"[“”„«»]")
_SINGLE_QUOTES_RE = re.compile(r"[‘’‚]")

# Scripts written without spaces between words.
_UNSPACED_SCRIPT_RE = re.compile(
    r"[฀-໿ក-៿぀-ヿ㐀-䶿一-鿿]"
)
_TOKEN_RE = re.compile(r"\S+")

TERMINAL_PUNCTUATION = (".", "!", "?", "…", "。", "！", "？")
_TRAILING_CLOSERS = "\"')]»”’*_"

MIN_LENGTH = 2


def _normalize_once(text: str) -> str:
    text = _REPAIR_RE.sub(lambda m: ENCODING_REPAIRS[m.group(0)], text)
    text = _CONTROL_RE.sub("", text)
    text = _INVISIBLE_RE.sub("", text)
    text = _DOUBLE_QUOTES_RE.sub('"', text)
    text = _SINGLE_QUOTES_RE.sub("'", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize(text: Any) -> str:
    """Clean text for display and storage.

    Repairs common mojibake, strips control and zero-width/bidi characters,
    straightens curly quotes and collapses whitespace. Removing a character
    can expose a new mojibake sequence, so the pass repeats until the text
    stops changing; every pass either shortens the text or removes a
    character the pass targets, so the loop terminates.

    Examples:
        >>> normalize("  Â¿QuÃ©​   tal?  ")
        '¿Qué tal?'
    """
    if text is None:
        return ""
    current = str(text)
    while True:
        cleaned = _normalize_once(current)
        if cleaned == current:
            return cleaned
        current = cleaned


class RejectionReason(str, Enum):
    """Closed set of validation outcomes."""
    VALID = "valid"
    EMPTY = "empty"
    TOO_SHORT = "too_short"
    REPLACEMENT_CHARACTER = "replacement_character"
    REPEATED_CHARACTER = "repeated_character"
    SINGLE_LETTER_RUN = "single_letter_run"
    REPEATED_WORD_LOOP = "repeated_word_loop"
    INSUFFICIENT_WORDS = "insufficient_words"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: RejectionReason
    corrected_text: Optional[str] = None
    repaired: bool = False


@dataclass(frozen=True)
class CorruptionSignature:
    """A named pattern whose presence marks text as corrupt."""
    name: str
    pattern: re.Pattern
    reason: RejectionReason

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


CORRUPTION_SIGNATURES: List[CorruptionSignature] = [
    CorruptionSignature(
        "replacement_character",
        re.compile("�"),
        RejectionReason.REPLACEMENT_CHARACTER,
    ),
    CorruptionSignature(
        "repeated_character",
        re.compile(r"(.)\1{10,}"),
        RejectionReason.REPEATED_CHARACTER,
    ),
    CorruptionSignature(
        "single_letter_run",
        re.compile(r"(?<!\S)(?:[^\W\d_](?:\s+|$)){6,}"),
        RejectionReason.SINGLE_LETTER_RUN,
    ),
    CorruptionSignature(
        "repeated_word_loop",
        re.compile(r"\b(\w{1,6})\b(?:[\s,.;]+\1\b){4,}", re.IGNORECASE),
        RejectionReason.REPEATED_WORD_LOOP,
    ),
]


def find_corruption(text: str) -> Optional[CorruptionSignature]:
    """Return the first corruption signature the text matches, if any."""
    for signature in CORRUPTION_SIGNATURES:
        if signature.matches(text):
            return signature
    return None


def has_enough_words(text: str) -> bool:
    """At least two tokens of length >= 2 that contain a letter.

    Always true for text in scripts that do not separate words by spaces.
    """
    if _UNSPACED_SCRIPT_RE.search(text):
        return True
    words = [
        token for token in _TOKEN_RE.findall(text)
        if len(token) >= 2 and any(ch.isalpha() for ch in token)
    ]
    return len(words) >= 2


def _ends_with_terminal(text: str) -> bool:
    return text.rstrip(_TRAILING_CLOSERS).endswith(TERMINAL_PUNCTUATION)


def repair(text: str) -> Tuple[str, bool]:
    """Capitalize the first character and ensure terminal punctuation."""
    corrected = text
    if corrected[0].islower():
        corrected = corrected[0].upper() + corrected[1:]
    if not _ends_with_terminal(corrected):
        corrected = corrected + "."
    return corrected, corrected != text


def validate(text: Any, min_length: int = MIN_LENGTH) -> ValidationResult:
    """Decide whether text is usable, repairing minor structural issues.

    Examples:
        >>> validate("hola, ¿cómo estás").corrected_text
        'Hola, ¿cómo estás.'
        >>> validate("a a a a a a a").reason.value
        'single_letter_run'
    """
    if not isinstance(text, str) or not text.strip():
        return ValidationResult(valid=False, reason=RejectionReason.EMPTY)

    candidate = text.strip()
    if len(candidate) < min_length:
        return ValidationResult(valid=False, reason=RejectionReason.TOO_SHORT)

    signature = find_corruption(candidate)
    if signature is not None:
        return ValidationResult(valid=False, reason=signature.reason)

    if not has_enough_words(candidate):
        return ValidationResult(valid=False, reason=RejectionReason.INSUFFICIENT_WORDS)

    corrected, repaired = repair(candidate)
    return ValidationResult(
        valid=True,
        reason=RejectionReason.VALID,
        corrected_text=corrected,
        repaired=repaired,
    )
