"""
Tests for text normalization, choice parsing and input cleanup.
"""

from farm_copilot.conversation.normalize import (
    clean_question,
    has_any,
    has_word,
    looks_like_field_label,
    normalize,
    pick_choice,
)


class TestNormalize:
    def test_lowercases_and_collapses_whitespace(self):
        assert normalize("  HEL   Acres\tby  County ") == "hel acres by county"

    def test_none_is_empty(self):
        assert normalize(None) == ""

    def test_non_string_input(self):
        assert normalize(801) == "801"


class TestMatchers:
    def test_has_any_is_substring_match(self):
        assert has_any("how many fields", ("farm", "field"))
        assert not has_any("how many towers", ("farm", "field"))

    def test_has_word_respects_boundaries(self):
        assert has_word("hel acres by county", "hel")
        assert not has_word("hello there", "hel")
        assert not has_word("county totals", "count")


class TestPickChoice:
    def test_digits_and_words(self):
        assert pick_choice("1") == 1
        assert pick_choice(" Two ") == 2
        assert pick_choice("3.") == 3

    def test_other_text_is_none(self):
        assert pick_choice("4") is None
        assert pick_choice("grain bags") is None
        assert pick_choice("") is None


class TestCleanQuestion:
    def test_typo_rules(self):
        cleaned = clean_question("how mans feilds on the rkt towre")
        assert cleaned.text == "how many fields on the rtk tower"
        assert "how_mans" in cleaned.rules
        assert "rtk_typo_rkt" in cleaned.rules
        assert cleaned.changed

    def test_paging_phrases(self):
        assert clean_question("show me more").text == "more"
        assert clean_question("Show all please").text == "show all"
        assert clean_question("the rest").text == "show all"

    def test_field_label_skips_typo_rules(self):
        cleaned = clean_question("0801-Lloyd acers")
        assert cleaned.text == "0801-Lloyd acers"

    def test_punctuation_spacing(self):
        cleaned = clean_question("HEL acres by county ?")
        assert cleaned.text == "HEL acres by county?"
        assert "punct_space" in cleaned.rules

    def test_case_is_preserved(self):
        cleaned = clean_question("Tell me about 0801-Lloyd N340")
        assert cleaned.text == "Tell me about 0801-Lloyd N340"
        assert not cleaned.changed

    def test_none_input(self):
        cleaned = clean_question(None)
        assert cleaned.text == ""
        assert cleaned.original == ""


class TestFieldLabels:
    def test_field_like_text(self):
        assert looks_like_field_label("0801-Lloyd N340")
        assert looks_like_field_label("0411")

    def test_plain_questions_are_not_field_labels(self):
        assert not looks_like_field_label("how many fields")
        assert not looks_like_field_label("12")
