"""
Data models for the inbound mail pipeline.

These type-safe data structures define clear contracts between the queue,
the decoder, the classifiers and the delivery client.
"""

import base64
import binascii
import json
import threading
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

SCHEMA_VERSION = 1


class MalformedEntryError(Exception):
    """Raised when a queue payload cannot be parsed as a QueueEntry."""
    pass


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@dataclass(frozen=True)
class RemotePeer:
    """Connection metadata reported by the acceptance stage."""
    ip: Optional[str] = None
    host: Optional[str] = None
    info: Optional[str] = None


@dataclass(frozen=True)
class HelloInfo:
    """HELO/EHLO greeting negotiated by the client."""
    host: Optional[str] = None
    verb: Optional[str] = None


@dataclass(frozen=True)
class SpamVerdict:
    """
    Pre-computed spam engine verdict attached at acceptance time.

    Attributes:
        score: Spam score (raw value as produced upstream)
        required: Threshold the score is compared against
        flag: "Yes" for spam, anything else for ham
        tests: Comma-separated rule names that fired
    """
    score: Any = None
    required: Any = None
    flag: Optional[str] = None
    tests: Optional[str] = None

    def as_notes(self) -> Dict[str, Any]:
        """Render in the note shape consumed by the spam extractor."""
        return {
            'score': self.score,
            'reqd': self.required,
            'flag': self.flag,
            'tests': self.tests,
        }


@dataclass(frozen=True)
class QueueEntry:
    """
    One raw, already-accepted message waiting in the inbound queue.

    Attributes:
        message_id: Opaque identifier, stable across retries of the message
        rcpt_to: Envelope recipients (never empty)
        raw_rfc822_base64: Raw message octets, base64 encoded
        schema_version: Entry format version
        enqueued_at: ISO 8601 enqueue timestamp
        mail_from: Envelope sender (empty for null-sender bounces)
        data_bytes: Declared message size (advisory, producer-controlled)
        remote: Remote peer metadata
        hello: Greeting info, if the client sent one
        tls: Whether the transport was encrypted
        spamassassin: Optional upstream spam verdict
    """
    message_id: str
    rcpt_to: List[str]
    raw_rfc822_base64: str
    schema_version: int = SCHEMA_VERSION
    enqueued_at: str = ''
    mail_from: str = ''
    data_bytes: int = 0
    remote: RemotePeer = field(default_factory=RemotePeer)
    hello: Optional[HelloInfo] = None
    tls: bool = False
    spamassassin: Optional[SpamVerdict] = None

    @classmethod
    def from_json(cls, raw: Any) -> 'QueueEntry':
        """
        Parse a serialized queue element.

        Args:
            raw: JSON text (str or UTF-8 bytes) popped from the queue

        Returns:
            QueueEntry: Parsed entry

        Raises:
            MalformedEntryError: If the payload is not a valid entry
        """
        if isinstance(raw, bytes):
            try:
                raw = raw.decode('utf-8')
            except UnicodeDecodeError as e:
                raise MalformedEntryError(f"Queue payload is not UTF-8: {e}")

        try:
            data = json.loads(raw)
        except (TypeError, ValueError, RecursionError) as e:
            raise MalformedEntryError(f"Queue payload is not valid JSON: {e}")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> 'QueueEntry':
        """Build an entry from its decoded wire form."""
        if not isinstance(data, dict):
            raise MalformedEntryError(
                f"Queue payload must be a JSON object, got: {type(data).__name__}"
            )

        message_id = data.get('message_id')
        if not message_id or not isinstance(message_id, str):
            raise MalformedEntryError("Queue payload missing 'message_id'")

        rcpt_to = data.get('rcpt_to')
        if isinstance(rcpt_to, str):
            rcpt_to = [rcpt_to]
        if not isinstance(rcpt_to, list) or not rcpt_to:
            raise MalformedEntryError(f"Queue payload {message_id} has no recipients")

        raw_b64 = data.get('raw_rfc822_base64') or ''
        if not isinstance(raw_b64, str):
            raise MalformedEntryError(f"Queue payload {message_id} has non-text raw field")
        try:
            base64.b64decode(raw_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedEntryError(f"Queue payload {message_id} raw field is not base64: {e}")

        remote = data.get('remote') or {}
        hello = data.get('hello')
        spam = data.get('spamassassin')

        try:
            data_bytes = int(data.get('data_bytes') or 0)
        except (TypeError, ValueError):
            data_bytes = 0

        return cls(
            message_id=message_id,
            rcpt_to=[str(r) for r in rcpt_to],
            raw_rfc822_base64=raw_b64,
            schema_version=data.get('schema_version', SCHEMA_VERSION),
            enqueued_at=data.get('enqueued_at') or '',
            mail_from=data.get('mail_from') or '',
            data_bytes=data_bytes,
            remote=RemotePeer(
                ip=remote.get('ip'),
                host=remote.get('host'),
                info=remote.get('info'),
            ) if isinstance(remote, dict) else RemotePeer(),
            hello=HelloInfo(
                host=hello.get('host'),
                verb=hello.get('verb'),
            ) if isinstance(hello, dict) else None,
            tls=bool(data.get('tls', False)),
            spamassassin=SpamVerdict(
                score=spam.get('score'),
                required=spam.get('required'),
                flag=spam.get('flag'),
                tests=spam.get('tests'),
            ) if isinstance(spam, dict) else None,
        )

    @classmethod
    def build(
        cls,
        raw_message: bytes,
        rcpt_to: List[str],
        mail_from: str = '',
        message_id: Optional[str] = None,
        **kwargs: Any
    ) -> 'QueueEntry':
        """
        Create a well-formed entry from raw message bytes.

        Used by producers and operator tools; the worker itself only parses.
        """
        return cls(
            message_id=message_id or str(uuid.uuid4()),
            rcpt_to=list(rcpt_to),
            raw_rfc822_base64=base64.b64encode(raw_message).decode('ascii'),
            enqueued_at=kwargs.pop('enqueued_at', None) or utc_now_iso(),
            mail_from=mail_from,
            data_bytes=kwargs.pop('data_bytes', None) or len(raw_message),
            **kwargs
        )

    def raw_bytes(self) -> bytes:
        """Decode the raw message octets."""
        return base64.b64decode(self.raw_rfc822_base64)

    def to_dict(self) -> Dict[str, Any]:
        """Wire form, field-for-field as produced by the acceptance stage."""
        return {
            'schema_version': self.schema_version,
            'message_id': self.message_id,
            'enqueued_at': self.enqueued_at,
            'mail_from': self.mail_from,
            'rcpt_to': list(self.rcpt_to),
            'data_bytes': self.data_bytes,
            'remote': asdict(self.remote),
            'hello': asdict(self.hello) if self.hello else None,
            'tls': self.tls,
            'spamassassin': asdict(self.spamassassin) if self.spamassassin else None,
            'raw_rfc822_base64': self.raw_rfc822_base64,
        }


@dataclass
class DecodedAttachment:
    """
    Attachment recovered from the MIME tree.

    Attributes:
        filename: Original filename (None if the part had none)
        content_type: MIME type (e.g., "image/png", "application/pdf")
        size: Size in bytes of the decoded content
        content_id: Content-ID without angle brackets, if present
        content: Decoded binary content
        index: Position among the message's attachments
    """
    filename: Optional[str]
    content_type: str
    size: int
    content_id: Optional[str] = None
    content: Optional[bytes] = None
    index: int = 0


@dataclass
class DecodedMessage:
    """
    Parsed message content.

    Attributes:
        from_text: Normalized From header (display name and address)
        to_text: Normalized To header
        cc_text: Normalized Cc header
        subject: Normalized subject
        text_body: Plain text body (empty string if not present)
        html_body: HTML body (empty string if not present)
        headers: Header name -> value, first-seen casing, unique keys
        attachments: Attachments in MIME order
    """
    from_text: str = ''
    to_text: str = ''
    cc_text: str = ''
    subject: str = ''
    text_body: str = ''
    html_body: str = ''
    headers: Dict[str, str] = field(default_factory=dict)
    attachments: List[DecodedAttachment] = field(default_factory=list)


@dataclass
class DeliveryPayload:
    """Normalized representation POSTed to the downstream application."""
    message_id: str
    from_address: str
    to_address: str
    rcpt_to: str
    mail_from: str
    subject: str
    text_body: str
    html_body: str
    headers: Optional[Dict[str, str]]
    spam_status: str
    spam_score: float
    spam_threshold: float
    spam_report: Optional[str]
    spam_status_header: Optional[str]
    attachments: List[Dict[str, Any]]
    attachment_count: int
    has_attachments: bool
    size: int
    timestamp: str
    is_bounce: bool

    def to_dict(self) -> Dict[str, Any]:
        """JSON body for the webhook; headers are omitted when disabled."""
        result = {
            'message_id': self.message_id,
            'from': self.from_address,
            'to': self.to_address,
            'rcpt_to': self.rcpt_to,
            'mail_from': self.mail_from,
            'subject': self.subject,
            'text_body': self.text_body,
            'html_body': self.html_body,
            'spam_status': self.spam_status,
            'spam_score': self.spam_score,
            'spam_threshold': self.spam_threshold,
            'spam_report': self.spam_report,
            'spam_status_header': self.spam_status_header,
            'attachments': self.attachments,
            'attachment_count': self.attachment_count,
            'has_attachments': self.has_attachments,
            'size': self.size,
            'timestamp': self.timestamp,
            'is_bounce': self.is_bounce,
        }
        if self.headers is not None:
            result['headers'] = self.headers
        return result


@dataclass(frozen=True)
class DeadLetterEntry:
    """
    A failed queue entry plus failure metadata, written to the DLQ.

    Consumed out-of-band by operators, never by the worker.
    """
    message_id: str
    error_status: Optional[int]
    error_message: str
    payload: Dict[str, Any]
    failed_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def from_failure(cls, entry: QueueEntry, error: Exception) -> 'DeadLetterEntry':
        """Wrap an entry with the error that made it undeliverable."""
        return cls(
            message_id=entry.message_id,
            error_status=getattr(error, 'status', None),
            error_message=str(error) or type(error).__name__,
            payload=entry.to_dict(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'failed_at': self.failed_at,
            'message_id': self.message_id,
            'error': {
                'status': self.error_status,
                'message': self.error_message,
            },
            'payload': self.payload,
        }


class WorkerCounters:
    """
    Process-lifetime counters owned by the worker.

    Incremented by the worker loop and read by the stats reporter thread.
    """

    FIELDS = ('consumed', 'delivered', 'skipped_bounce', 'retried', 'failed', 'dlq')

    def __init__(self):
        self._lock = threading.Lock()
        self._values = {name: 0 for name in self.FIELDS}

    def increment(self, name: str, amount: int = 1) -> None:
        if name not in self._values:
            raise KeyError(f"Unknown counter: {name}")
        with self._lock:
            self._values[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._values[name]

    def snapshot(self) -> Dict[str, int]:
        """Consistent copy of all counters for reporting."""
        with self._lock:
            return dict(self._values)


@dataclass
class ProcessingResult:
    """
    Result of processing one queue element.

    This explicit result type makes success/failure handling clear
    and prevents exceptions from being used for control flow.

    Attributes:
        outcome: One of "delivered", "skipped_bounce", "dead_lettered", "dropped"
        message_id: Entry identifier (None if the entry could not be parsed)
        error_message: Error description (if processing failed)
    """
    outcome: str
    message_id: Optional[str] = None
    error_message: Optional[str] = None

    DELIVERED = 'delivered'
    SKIPPED_BOUNCE = 'skipped_bounce'
    DEAD_LETTERED = 'dead_lettered'
    DROPPED = 'dropped'

    @property
    def success(self) -> bool:
        """True when the message reached a terminal, non-failure state."""
        return self.outcome in (self.DELIVERED, self.SKIPPED_BOUNCE)

    def __repr__(self) -> str:
        """Human-readable representation for logging."""
        if self.success:
            return f"ProcessingResult(outcome={self.outcome}, message_id={self.message_id})"
        else:
            return (
                f"ProcessingResult(outcome={self.outcome}, message_id={self.message_id}, "
                f"error={self.error_message})"
            )
