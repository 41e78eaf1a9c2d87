"""
Header text normalization.

Repairs the mojibake produced when UTF-8 bytes were decoded one byte at a
time as Latin-1 (e.g. "CafÃ©" for "Café"). Repairs are only accepted when
they measurably improve the text, so legitimate extended-Latin strings are
left alone.
"""

import re
import sys
from typing import Any

_C1_CONTROLS = re.compile('[\u0080-\u009f]')

# UTF-8 lead byte followed by a continuation byte, both read as Latin-1.
_MOJIBAKE_PAIR = re.compile('(?=[\u00c2-\u00f4][\u0080-\u00bf])')

REPLACEMENT_CHAR = '\ufffd'

# Undecodable 8-bit bytes carried through as lone surrogates by the email parser
_SURROGATES = re.compile('[\ud800-\udfff]')


def has_c1_controls(value: str) -> bool:
    """Check for C1 control code points (U+0080-U+009F)."""
    return bool(_C1_CONTROLS.search(value))


def count_c1_controls(value: str) -> int:
    return len(_C1_CONTROLS.findall(value))


def count_undecodable(value: str) -> int:
    """Count replacement characters and lone surrogates."""
    return value.count(REPLACEMENT_CHAR) + len(_SURROGATES.findall(value))


def count_mojibake_pairs(value: Any) -> int:
    """
    Count overlapping lead/continuation pairs in a string.

    Non-strings and strings shorter than two characters score zero.
    """
    if not isinstance(value, str) or len(value) < 2:
        return 0
    return len(_MOJIBAKE_PAIR.findall(value))


def text_quality_score(value: Any) -> int:
    """
    Cheap garbling score for a decoded string; lower is better.

    Args:
        value: Candidate text

    Returns:
        int: Weighted count of mojibake pairs, C1 controls and
             undecodable characters (sys.maxsize for non-strings)
    """
    if not isinstance(value, str):
        return sys.maxsize

    return (
        count_mojibake_pairs(value) * 5
        + count_c1_controls(value) * 3
        + count_undecodable(value) * 8
    )


def try_repair_utf8_latin1_mojibake(value: Any) -> Any:
    """
    Reinterpret a Latin-1 mis-decoded string as UTF-8 when that helps.

    Args:
        value: Text to repair

    Returns:
        The repaired text, or the input unchanged when the repair is not
        possible or does not strictly improve it
    """
    if not isinstance(value, str) or not value:
        return value

    if any(ord(ch) > 0xFF for ch in value):
        return value

    try:
        repaired = value.encode('latin-1').decode('utf-8')
    except UnicodeDecodeError:
        return value

    if not repaired or REPLACEMENT_CHAR in repaired:
        return value

    if has_c1_controls(value) and not has_c1_controls(repaired):
        return repaired

    before_pairs = count_mojibake_pairs(value)
    if before_pairs > 0 and count_mojibake_pairs(repaired) < before_pairs:
        return repaired

    return value


def normalize_header(value: Any) -> Any:
    """
    Normalize header text; non-string input is returned as is.

    Repairs are applied until the text stops changing, so doubly
    mis-decoded values are fully repaired and normalize_header is
    idempotent. Every accepted repair shortens the string, which bounds
    the loop.
    """
    if not isinstance(value, str):
        return value

    current = value
    while True:
        repaired = try_repair_utf8_latin1_mojibake(current)
        if repaired == current:
            return current
        current = repaired
