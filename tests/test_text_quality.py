"""Tests for text normalization and response validation."""

import pytest

from mancy.app.services.text_quality import (
    CORRUPTION_SIGNATURES,
    RejectionReason,
    find_corruption,
    has_enough_words,
    normalize,
    repair,
    validate,
)


class TestNormalize:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Ã¡rbol y canciÃ³n", "árbol y canción"),
            ("Â¿QuÃ© tal?", "¿Qué tal?"),
            ("hola\x00 mundo\x07", "hola mundo"),
            ("hola​‮ mundo", "hola mundo"),
            ("“Comillas” y ‘simples’", "\"Comillas\" y 'simples'"),
            ("  varios   espacios\n\ty saltos  ", "varios espacios y saltos"),
        ],
    )
    def test_cleanup(self, raw, expected):
        assert normalize(raw) == expected

    def test_none_becomes_empty(self):
        assert normalize(None) == ""

    def test_repeats_until_stable(self):
        # Removing the zero-width space exposes a mojibake pair
        assert normalize("Ã​©") == "é"

    @pytest.mark.parametrize(
        "raw",
        ["Ã​©xito", "  Â¿QuÃ©​   tal?  ", "texto normal.", "\x01​"],
    )
    def test_idempotent(self, raw):
        once = normalize(raw)
        assert normalize(once) == once


class TestValidate:

    def test_valid_text_is_unchanged(self):
        result = validate("Hola, ¿cómo estás?")
        assert result.valid
        assert result.reason is RejectionReason.VALID
        assert result.corrected_text == "Hola, ¿cómo estás?"
        assert not result.repaired

    def test_repairs_capitalization_and_punctuation(self):
        result = validate("hola, ¿cómo estás")
        assert result.valid
        assert result.corrected_text == "Hola, ¿cómo estás."
        assert result.repaired

    def test_terminal_punctuation_inside_closing_quote(self):
        result = validate('Ella dijo "hasta luego."')
        assert result.corrected_text == 'Ella dijo "hasta luego."'

    @pytest.mark.parametrize(
        "text, reason",
        [
            (None, RejectionReason.EMPTY),
            ("", RejectionReason.EMPTY),
            ("   ", RejectionReason.EMPTY),
            ("a", RejectionReason.TOO_SHORT),
            ("Hola � mundo", RejectionReason.REPLACEMENT_CHARACTER),
            ("Nooooooooooooooo puede ser", RejectionReason.REPEATED_CHARACTER),
            ("a a a a a a a", RejectionReason.SINGLE_LETTER_RUN),
            ("la la la la la la", RejectionReason.REPEATED_WORD_LOOP),
            ("Hola", RejectionReason.INSUFFICIENT_WORDS),
            ("12 34 56", RejectionReason.INSUFFICIENT_WORDS),
        ],
    )
    def test_rejections(self, text, reason):
        result = validate(text)
        assert not result.valid
        assert result.reason is reason
        assert result.corrected_text is None

    def test_unspaced_scripts_skip_word_count(self):
        result = validate("こんにちは。")
        assert result.valid
        assert result.corrected_text == "こんにちは。"

        thai = validate("สวัสดีครับ")
        assert thai.valid
        assert thai.corrected_text == "สวัสดีครับ."

    def test_min_length_is_configurable(self):
        assert validate("Sí, claro.", min_length=20).reason is RejectionReason.TOO_SHORT


class TestSignatures:

    def test_every_signature_has_distinct_name(self):
        names = [s.name for s in CORRUPTION_SIGNATURES]
        assert len(names) == len(set(names))

    def test_find_corruption(self):
        assert find_corruption("Texto perfectamente normal.") is None
        assert find_corruption("x y z w v u t").name == "single_letter_run"

    def test_ordinary_spanish_is_not_a_letter_run(self):
        assert find_corruption("Ve a la tienda y compra pan o leche.") is None

    def test_has_enough_words(self):
        assert has_enough_words("dos palabras")
        assert not has_enough_words("uno")
        assert not has_enough_words("a b")

    def test_repair_leaves_questions_alone(self):
        assert repair("¿Qué hora es?") == ("¿Qué hora es?", False)
        assert repair("bien") == ("Bien.", True)
