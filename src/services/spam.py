"""
Spam signal extraction.

Reads spam verdicts produced upstream (SpamAssassin notes recorded at
acceptance time, or X-Spam-* headers). No scanning happens here.
"""

import logging
import math
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 5.0

_SCORE_RE = re.compile(r'score=([-\d.]+)')
_REQUIRED_RE = re.compile(r'required=([-\d.]+)')


@dataclass
class SpamInfo:
    """
    Spam verdict forwarded downstream.

    Attributes:
        status: "spam", "ham" or "unknown"
        score: Spam score
        threshold: Score at or above which the message is spam
        report: Rule names or report text, if available
        status_header: Raw X-Spam-Status header, if present
    """
    status: str = 'unknown'
    score: float = 0.0
    threshold: float = DEFAULT_THRESHOLD
    report: Optional[str] = None
    status_header: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _to_float(value: Any, fallback: float) -> float:
    """Parse a float; garbage, zero-length, NaN and infinity yield fallback."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(parsed):
        return fallback
    return parsed


def _get(headers: Any, name: str) -> Optional[str]:
    """Case-insensitive header lookup over a mapping."""
    if not headers or not hasattr(headers, 'items'):
        return None
    lowered = name.lower()
    for key, value in headers.items():
        if str(key).lower() == lowered and isinstance(value, str):
            return value
    return None


def _spamassassin_notes(notes: Any) -> Optional[Mapping[str, Any]]:
    if not isinstance(notes, Mapping):
        return None
    sa = notes.get('spamassassin')
    return sa if isinstance(sa, Mapping) and sa else None


def parse_spamassassin_notes(sa: Mapping[str, Any]) -> SpamInfo:
    """
    Build SpamInfo from a SpamAssassin note.

    Args:
        sa: Note with score, reqd, flag and tests keys

    Returns:
        SpamInfo: Parsed verdict
    """
    info = SpamInfo()

    if sa.get('score') is not None:
        info.score = _to_float(sa['score'], 0.0)

    if sa.get('reqd') is not None:
        info.threshold = _to_float(sa['reqd'], DEFAULT_THRESHOLD)

    if sa.get('flag') is not None:
        info.status = 'spam' if sa['flag'] == 'Yes' else 'ham'

    if sa.get('tests'):
        info.report = sa['tests']

    return info


def parse_spam_headers(headers: Any) -> SpamInfo:
    """
    Build SpamInfo from X-Spam-Status / X-Spam-Score / X-Spam-Report.

    X-Spam-Status has the form "Yes, score=5.2, required=5.0"; a separate
    X-Spam-Score overrides the parsed score.
    """
    info = SpamInfo()

    spam_status = _get(headers, 'X-Spam-Status')
    spam_score = _get(headers, 'X-Spam-Score')
    spam_report = _get(headers, 'X-Spam-Report')

    if not (spam_status or spam_score):
        return info

    if spam_status:
        info.status_header = spam_status

        score_match = _SCORE_RE.search(spam_status)
        if score_match:
            info.score = _to_float(score_match.group(1), 0.0)

        required_match = _REQUIRED_RE.search(spam_status)
        if required_match:
            info.threshold = _to_float(required_match.group(1), DEFAULT_THRESHOLD)

        info.status = 'spam' if spam_status.strip().startswith('Yes') else 'ham'

    if spam_score:
        info.score = _to_float(spam_score.strip(), info.score)

    if spam_report:
        info.report = spam_report

    return info


def extract(
    connection_notes: Any,
    transaction_notes: Any,
    headers: Any
) -> SpamInfo:
    """
    Extract spam information from upstream notes and headers.

    Priority: transaction-scoped verdict, connection-scoped verdict, then
    headers. Missing or malformed inputs yield the default verdict.

    Args:
        connection_notes: Connection notes mapping (may hold "spamassassin")
        transaction_notes: Transaction notes mapping (may hold "spamassassin")
        headers: Decoded header mapping

    Returns:
        SpamInfo: Verdict (status "unknown" when no source is present)
    """
    sa = _spamassassin_notes(transaction_notes)
    if sa is not None:
        logger.debug("Spam verdict taken from transaction notes")
        return parse_spamassassin_notes(sa)

    sa = _spamassassin_notes(connection_notes)
    if sa is not None:
        logger.debug("Spam verdict taken from connection notes")
        return parse_spamassassin_notes(sa)

    return parse_spam_headers(headers)


def is_spam(score: float, threshold: float = DEFAULT_THRESHOLD) -> bool:
    """Check a score against a threshold."""
    return score >= threshold
