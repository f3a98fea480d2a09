"""
Test: manual mark decoding and question number normalization.
"""
import pytest

from checkmate.services.manual_marks import decode_manual_mark, is_whole_question, parse_question_number


class TestDecodeManualMark:
    def test_v_is_full_marks(self):
        assert decode_manual_mark("V") == 100

    def test_lowercase_v(self):
        assert decode_manual_mark(" v ") == 100

    @pytest.mark.parametrize("token", ["✓", "✔", "☑", "✅", "✓ יפה מאוד"])
    def test_checkmark_glyphs(self, token):
        assert decode_manual_mark(token) == 100

    def test_x_is_zero(self):
        assert decode_manual_mark("X") == 0

    @pytest.mark.parametrize("token", ["✗", "✘", "❌"])
    def test_cross_glyphs(self, token):
        assert decode_manual_mark(token) == 0

    def test_deduction_two_points(self):
        assert decode_manual_mark("-2") == 90

    def test_deduction_five_points(self):
        assert decode_manual_mark("-5") == 75

    def test_large_deduction_floors_at_zero(self):
        assert decode_manual_mark("-40") == 0

    def test_bare_dash_loses_nothing(self):
        assert decode_manual_mark("-") == 100

    def test_plain_number(self):
        assert decode_manual_mark("90") == 90

    def test_number_with_plus(self):
        assert decode_manual_mark("+7") == 7

    def test_number_over_100_is_capped(self):
        assert decode_manual_mark("150") == 100

    def test_leading_number_with_suffix(self):
        assert decode_manual_mark("85/100") == 85

    def test_integer_input(self):
        assert decode_manual_mark(90) == 90

    @pytest.mark.parametrize("token", ["garbage", "", "   ", "טוב", None])
    def test_unparseable_is_zero(self, token):
        assert decode_manual_mark(token) == 0

    @pytest.mark.parametrize("token", ["V", "X", "-2", "-999", "999", "abc", "✓", "-x", "+", "3.7"])
    def test_always_in_range(self, token):
        assert 0 <= decode_manual_mark(token) <= 100


class TestParseQuestionNumber:
    def test_digits(self):
        assert parse_question_number("3") == 3

    def test_hebrew_prefix(self):
        assert parse_question_number("שאלה 3") == 3

    def test_english_prefix(self):
        assert parse_question_number("Q12") == 12

    def test_sub_question_uses_main_number(self):
        assert parse_question_number("2א") == 2

    def test_hebrew_letter(self):
        assert parse_question_number("ב") == 2

    def test_hebrew_letter_with_geresh(self):
        assert parse_question_number("ב'") == 2

    def test_hebrew_ten(self):
        assert parse_question_number("י.") == 10

    def test_integer_passthrough(self):
        assert parse_question_number(4) == 4

    def test_no_number(self):
        assert parse_question_number("abc") is None

    def test_none(self):
        assert parse_question_number(None) is None


class TestIsWholeQuestion:
    @pytest.mark.parametrize("label", ["3", "שאלה 3", "Q3", "3.", "ב", "ב'", 4])
    def test_whole(self, label):
        assert is_whole_question(label)

    @pytest.mark.parametrize("label", ["3א", "2.b", "2(א)", "abc", "", None])
    def test_part_or_unknown(self, label):
        assert not is_whole_question(label)
