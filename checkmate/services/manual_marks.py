"""
Teacher handwritten mark decoding.

A teacher grading on paper leaves one of a few kinds of marks next to an
answer: a checkmark, a cross, a deduction ("-2") or a plain number ("90").
decode_manual_mark turns that raw token into a 0-100 quality score so a
digitized manual grade is directly comparable to an AI score.
"""
import re
from typing import Any, Optional

CHECKMARK_GLYPHS = ("✓", "✔", "☑", "✅")
CROSS_GLYPHS = ("✗", "✘", "❌")

# Each point of a written deduction costs this many quality points
DEDUCTION_SCALE = 5

_LEADING_DIGITS = re.compile(r"^\s*(\d+)")
_LEADING_INTEGER = re.compile(r"^\+?\s*(\d+)")

# Hebrew letters used as question numerals (א=1 ... י=10)
HEBREW_NUMERALS = {
    "א": 1, "ב": 2, "ג": 3, "ד": 4, "ה": 5,
    "ו": 6, "ז": 7, "ח": 8, "ט": 9, "י": 10,
}
_NUMERAL_PUNCTUATION = re.compile(r"[\s'\"׳״.:)(\-]")
_QUESTION_PREFIX = re.compile(r"^(?:שאלה|question|q)\s*", re.IGNORECASE)


def decode_manual_mark(token: Any) -> int:
    """
    Convert a handwritten mark token into a 0-100 quality score.

    Rules, in order, on the trimmed upper-cased token:
        1. "V" or any checkmark glyph  -> 100
        2. "X" or any cross glyph      -> 0
        3. "-N"                        -> max(0, 100 - N * 5)
        4. a plain integer             -> that integer (capped at 100)
        anything else                  -> 0

    Never raises.
    """
    if token is None:
        return 0
    raw = str(token).strip().upper()

    if raw == "V" or any(glyph in raw for glyph in CHECKMARK_GLYPHS):
        return 100

    if raw == "X" or any(glyph in raw for glyph in CROSS_GLYPHS):
        return 0

    if raw.startswith("-"):
        match = _LEADING_DIGITS.match(raw[1:])
        points_lost = int(match.group(1)) if match else 0
        return max(0, 100 - points_lost * DEDUCTION_SCALE)

    match = _LEADING_INTEGER.match(raw)
    if not match:
        return 0
    return min(100, int(match.group(1)))


def parse_question_number(label: Any) -> Optional[int]:
    """
    Normalize a question label to an integer.

    "3", "שאלה 3", "Q3" and "3א" all give 3; a lone Hebrew numeral letter
    ("ב", "ב'") gives its value. Returns None when nothing numeric is found.
    """
    if label is None:
        return None
    if isinstance(label, int) and not isinstance(label, bool):
        return label

    text = str(label).strip()
    digits = re.search(r"\d+", text)
    if digits:
        return int(digits.group(0))

    letters = _NUMERAL_PUNCTUATION.sub("", text)
    return HEBREW_NUMERALS.get(letters)


def is_whole_question(label: Any) -> bool:
    """
    True when a label names a whole question ("3", "שאלה 3", "Q3", "ב'")
    rather than a part of one ("3א", "2.b").
    """
    if label is None:
        return False
    if isinstance(label, int) and not isinstance(label, bool):
        return True

    text = _QUESTION_PREFIX.sub("", str(label).strip())
    text = _NUMERAL_PUNCTUATION.sub("", text)
    return text.isdigit() or text in HEBREW_NUMERALS
