"""
Bounce detection.

Detects bounce/DSN (Delivery Status Notification) messages so they are not
forwarded downstream, which would risk bounce loops.

A single weak signal is never enough: an ordinary notification email often
has a "delivery" subject or a no-reply sender. Signals must corroborate each
other (see is_bounce).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

SENDER_PATTERNS = (
    'mailer-daemon',
    'postmaster',
    'mail-daemon',
    'mailerdaemon',
)

SUBJECT_PATTERNS = (
    'undelivered',
    'undeliverable',
    'delivery status',
    'delivery failed',
    'delivery failure',
    'mail delivery',
    'delivery notification',
    'could not be delivered',
    'not delivered',
    'returned mail',
    'returned to sender',
    'failure notice',
)

BODY_PATTERNS = (
    'Original-Envelope-Id:',
    'Reporting-MTA:',
    'Final-Recipient:',
    'Action: failed',
    'Action: delayed',
    'Diagnostic-Code:',
    'Remote-MTA:',
    'X-Postfix-Queue-ID:',
    'This is the mail system at host',
    'Delivery to the following recipient',
)

AUTO_REPLY_PRECEDENCE = ('bulk', 'junk', 'auto_reply')


@dataclass
class BounceSignals:
    """Raw signal counts found in a message."""
    empty_sender: bool = False
    sender_patterns: List[str] = field(default_factory=list)
    subject_patterns: List[str] = field(default_factory=list)
    body_markers: List[str] = field(default_factory=list)

    @property
    def has_sender_pattern(self) -> bool:
        return bool(self.sender_patterns)

    @property
    def has_subject_pattern(self) -> bool:
        return bool(self.subject_patterns)

    @property
    def count(self) -> int:
        """Total number of individual indicators."""
        return (
            int(self.empty_sender)
            + len(self.sender_patterns)
            + len(self.subject_patterns)
            + len(self.body_markers)
        )


@dataclass
class BounceAnalysis:
    """
    Detailed bounce analysis.

    Attributes:
        is_bounce: Decision of the correlation rule
        confidence: "none", "low", "medium" or "high" by indicator count
        indicators: (type, reason) pairs, e.g. {"type": "body", "reason": "Reporting-MTA:"}
        dsn_detected: Two or more DSN body markers present
        bounce_type: "dsn", "null_sender", "automated" or None
    """
    is_bounce: bool
    confidence: str
    indicators: List[Dict[str, str]]
    dsn_detected: bool
    bounce_type: Optional[str]


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def collect_signals(
    from_email: Optional[str],
    subject: Optional[str],
    text_body: Optional[str],
    envelope_from: Optional[str] = None
) -> BounceSignals:
    """
    Gather every bounce indicator present in the message.

    Args:
        from_email: Header From value (display form allowed)
        subject: Subject line
        text_body: Plain text body
        envelope_from: Envelope sender (MAIL FROM); None when unknown

    Returns:
        BounceSignals: Indicators found
    """
    signals = BounceSignals()

    # Null sender on either the header or the envelope
    signals.empty_sender = _is_blank(from_email) or (
        envelope_from is not None and _is_blank(envelope_from)
    )

    senders = ' '.join(s.lower() for s in (from_email, envelope_from) if s)
    signals.sender_patterns = [p for p in SENDER_PATTERNS if p in senders]

    if subject:
        subject_lower = subject.lower()
        signals.subject_patterns = [p for p in SUBJECT_PATTERNS if p in subject_lower]

    if text_body:
        signals.body_markers = [p for p in BODY_PATTERNS if p in text_body]

    return signals


def is_bounce(
    from_email: Optional[str],
    subject: Optional[str],
    text_body: Optional[str],
    envelope_from: Optional[str] = None,
    strict: bool = False
) -> bool:
    """
    Check if an email is a bounce message.

    A message is a bounce when signals corroborate each other:
    - null sender plus any other signal, or
    - two or more DSN body markers (three in strict mode), or
    - bounce-daemon sender plus a subject keyword or a body marker, or
    - subject keyword plus a body marker.

    Args:
        from_email: Sender address
        subject: Email subject
        text_body: Plain text body
        envelope_from: Envelope sender, if known
        strict: Raise the bar for body-marker-only detection

    Returns:
        bool: True if message appears to be a bounce

    Example:
        >>> is_bounce("alice@example.com", "Hello", "Just saying hi")
        False
    """
    signals = collect_signals(from_email, subject, text_body, envelope_from)
    return _correlate(signals, strict)


def _correlate(signals: BounceSignals, strict: bool = False) -> bool:
    body_count = len(signals.body_markers)
    min_body_markers = 3 if strict else 2

    if signals.empty_sender and (
        signals.has_sender_pattern or signals.has_subject_pattern or body_count > 0
    ):
        return True

    if body_count >= min_body_markers:
        return True

    if signals.has_sender_pattern and (signals.has_subject_pattern or body_count >= 1):
        return True

    return signals.has_subject_pattern and body_count >= 1


def analyze(
    from_email: Optional[str],
    subject: Optional[str],
    text_body: Optional[str],
    envelope_from: Optional[str] = None
) -> BounceAnalysis:
    """Detailed bounce analysis for logging and diagnostics."""
    signals = collect_signals(from_email, subject, text_body, envelope_from)

    indicators: List[Dict[str, str]] = []
    if signals.empty_sender:
        indicators.append({'type': 'sender', 'reason': 'empty_sender'})
    indicators.extend({'type': 'sender', 'reason': p} for p in signals.sender_patterns)
    indicators.extend({'type': 'subject', 'reason': p} for p in signals.subject_patterns)
    indicators.extend({'type': 'body', 'reason': p} for p in signals.body_markers)

    count = len(indicators)
    if count == 0:
        confidence = 'none'
    elif count == 1:
        confidence = 'low'
    elif count == 2:
        confidence = 'medium'
    else:
        confidence = 'high'

    bounce = _correlate(signals)
    dsn_detected = len(signals.body_markers) >= 2

    bounce_type = None
    if bounce:
        if dsn_detected:
            bounce_type = 'dsn'
        elif signals.empty_sender:
            bounce_type = 'null_sender'
        else:
            bounce_type = 'automated'

    return BounceAnalysis(
        is_bounce=bounce,
        confidence=confidence,
        indicators=indicators,
        dsn_detected=dsn_detected,
        bounce_type=bounce_type,
    )


def _header(headers: Mapping[str, Any], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if str(key).lower() == lowered and value is not None:
            return str(value)
    return None


def is_auto_reply(headers: Optional[Mapping[str, Any]]) -> bool:
    """
    Check if message is an auto-reply (out of office, etc.).

    Args:
        headers: Header mapping (any key casing)

    Returns:
        bool: True if auto-reply
    """
    if not headers:
        return False

    # RFC 3834
    auto_submitted = _header(headers, 'Auto-Submitted')
    if auto_submitted and auto_submitted.strip().lower() != 'no':
        return True

    if _header(headers, 'X-Auto-Response-Suppress'):
        return True

    precedence = _header(headers, 'Precedence')
    if precedence and precedence.strip().lower() in AUTO_REPLY_PRECEDENCE:
        return True

    return False
