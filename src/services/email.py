"""
MIME decoding for queued inbound messages.

Two decode strategies are available; they differ only in how 8-bit header
and body text is mapped to Unicode:

- NativeCharsetStrategy trusts the declared charsets and lets the standard
  library codecs decode them (policy.default).
- DetectedCharsetStrategy reads the raw bytes (policy.compat32) and picks
  the charset itself: strict UTF-8 first, then chardet, then the declared
  charset, then windows-1252/latin-1.

MimeDecoder runs the primary strategy, falls back to the secondary when the
primary output looks garbled (or fails with a charset error), re-decodes the
subject straight from the raw header line, and normalizes every text field.
"""

import logging
import re
from email import policy
from email.header import decode_header
from email.errors import HeaderParseError
from email.message import Message
from email.parser import BytesParser
from typing import Any, Dict, Optional, Tuple

import chardet

from domain.models import DecodedAttachment, DecodedMessage
from services.text import count_mojibake_pairs, count_undecodable, normalize_header, text_quality_score

logger = logging.getLogger(__name__)

# Scored prefix of each field, bounds the cost of scoring large bodies
SCORE_SAMPLE_CHARS = 4096

# chardet results below this confidence are ignored
CHARDET_MIN_CONFIDENCE = 0.7

_FOLDING_RE = re.compile(r'\r?\n(?=[ \t])')

# Raw 8-bit bytes the parser carried through as surrogate escapes
_RAW_BYTE_ESCAPES = re.compile('[\udc80-\udcff]')


class ParseError(Exception):
    """Raised when input is not a structurally valid message."""
    pass


class MessageTooLargeError(ParseError):
    """Raised when a raw message exceeds the configured size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Message exceeds max_raw_bytes ({size} > {limit})")
        self.size = size
        self.limit = limit


def is_charset_decode_error(err: BaseException) -> bool:
    """Check whether an exception came from charset conversion."""
    if isinstance(err, (UnicodeError, LookupError)):
        return True

    message = str(err).lower()
    return any(word in message for word in ('charset', 'encoding', 'decode'))


def _codec_decode(data: bytes, charset: Optional[str]) -> Optional[str]:
    """Strictly decode with a named codec; None if unknown or invalid."""
    if not charset:
        return None
    try:
        return data.decode(charset)
    except (LookupError, UnicodeDecodeError):
        return None


def decode_bytes_detected(data: bytes, declared: Optional[str] = None) -> str:
    """
    Decode bytes, choosing the charset from the content.

    Args:
        data: Raw bytes
        declared: Charset declared by the message, if any

    Returns:
        str: Decoded text (never raises)
    """
    if not data:
        return ''

    if declared and declared.lower() == 'unknown-8bit':
        declared = None

    if data.isascii():
        # 7-bit data: only 7-bit encodings (ISO-2022, UTF-7) need the declared codec
        return _codec_decode(data, declared) or data.decode('ascii')

    text = _codec_decode(data, 'utf-8')
    if text is not None:
        return text

    detected = chardet.detect(data)
    if detected.get('encoding') and detected.get('confidence', 0) > CHARDET_MIN_CONFIDENCE:
        text = _codec_decode(data, detected['encoding'])
        if text is not None:
            return text

    for charset in (declared, 'windows-1252'):
        text = _codec_decode(data, charset)
        if text is not None:
            return text

    return data.decode('latin-1')


def restore_raw_bytes(value: Any) -> Any:
    """
    Re-decode surrogate-escaped 8-bit bytes left in parsed text.

    Text without escapes is returned unchanged.
    """
    if not isinstance(value, str) or not _RAW_BYTE_ESCAPES.search(value):
        return value
    try:
        data = value.encode('utf-8', 'surrogateescape')
    except UnicodeEncodeError:
        return value.encode('utf-8', 'replace').decode('utf-8')
    return decode_bytes_detected(data)


def _is_attachment_part(part: Message, content_type: str, filename: Optional[str]) -> bool:
    """
    Decide whether a leaf part is an attachment.

    Handles both "attachment" and "inline" with filename; images are often
    sent as "inline" in HTML emails. Some clients omit Content-Disposition
    for files, so a filename on an image/application part also counts.
    """
    content_disposition = str(part.get('Content-Disposition', '')).lower()

    if 'attachment' in content_disposition:
        return True
    if 'inline' in content_disposition and filename:
        return True
    return bool(filename) and content_type.startswith(('image/', 'application/'))


def _content_id(part: Message) -> Optional[str]:
    value = part.get('Content-ID')
    if not value:
        return None
    return str(value).strip().strip('<>') or None


def _merge_header(headers: Dict[str, str], index: Dict[str, str], name: str, value: str) -> None:
    """Add a header keeping the first-seen casing; repeats are comma-joined."""
    lowered = name.lower()
    if lowered in index:
        key = index[lowered]
        headers[key] = f"{headers[key]}, {value}"
    else:
        index[lowered] = name
        headers[name] = value


class DecodeStrategy:
    """Turns raw message bytes into an un-normalized DecodedMessage."""

    name = 'base'

    def decode(self, raw: bytes) -> Tuple[DecodedMessage, Message]:
        """
        Args:
            raw: Raw RFC 5322 message

        Returns:
            (DecodedMessage, parsed Message)
        """
        raise NotImplementedError

    def _collect_parts(self, msg: Message, result: DecodedMessage) -> None:
        """Walk leaf parts, filling bodies and attachments."""
        for part in msg.walk():
            if part.is_multipart():
                continue

            content_type = part.get_content_type()
            filename = self._filename(part)

            if _is_attachment_part(part, content_type, filename):
                content = part.get_payload(decode=True) or b''
                result.attachments.append(DecodedAttachment(
                    filename=filename,
                    content_type=content_type,
                    size=len(content),
                    content_id=_content_id(part),
                    content=content,
                    index=len(result.attachments),
                ))

            # Only the first text/plain and text/html parts are kept
            elif content_type == 'text/plain' and not result.text_body:
                result.text_body = self._body_text(part)

            elif content_type == 'text/html' and not result.html_body:
                result.html_body = self._body_text(part)

        if not msg.is_multipart() and not result.attachments and msg.get_content_type() not in ('text/plain', 'text/html'):
            logger.warning(
                f"Unknown content type for non-multipart email: {msg.get_content_type()}. "
                f"Email body will be empty."
            )

    def _filename(self, part: Message) -> Optional[str]:
        return part.get_filename()

    def _body_text(self, part: Message) -> str:
        raise NotImplementedError


class NativeCharsetStrategy(DecodeStrategy):
    """Decode with the declared charsets via the standard library codecs."""

    name = 'native'

    def decode(self, raw: bytes) -> Tuple[DecodedMessage, Message]:
        msg = BytesParser(policy=policy.default).parsebytes(raw)

        result = DecodedMessage(
            from_text=str(msg.get('From', '') or ''),
            to_text=str(msg.get('To', '') or ''),
            cc_text=str(msg.get('Cc', '') or ''),
            subject=str(msg.get('Subject', '') or ''),
        )

        index: Dict[str, str] = {}
        for name, value in msg.items():
            _merge_header(result.headers, index, name, str(value))

        self._collect_parts(msg, result)
        return result, msg

    def _body_text(self, part: Message) -> str:
        # get_content() handles quoted-printable, base64, etc automatically;
        # an unknown declared charset raises LookupError
        return part.get_content()


class DetectedCharsetStrategy(DecodeStrategy):
    """Decode raw 8-bit text with a charset chosen from the content."""

    name = 'detected'

    def decode(self, raw: bytes) -> Tuple[DecodedMessage, Message]:
        msg = BytesParser(policy=policy.compat32).parsebytes(raw)

        result = DecodedMessage(
            from_text=self._header_text(msg.get('From')),
            to_text=self._header_text(msg.get('To')),
            cc_text=self._header_text(msg.get('Cc')),
            subject=self._header_text(msg.get('Subject')),
        )

        index: Dict[str, str] = {}
        for name, value in msg.items():
            _merge_header(result.headers, index, name, self._header_text(value))

        self._collect_parts(msg, result)
        return result, msg

    def _header_text(self, value: Any) -> str:
        if value is None:
            return ''

        try:
            fragments = decode_header(value)
        except HeaderParseError:
            return _FOLDING_RE.sub('', str(value))

        out = []
        for fragment, charset in fragments:
            if isinstance(fragment, str):
                out.append(fragment)
            else:
                out.append(decode_bytes_detected(fragment, charset))
        return _FOLDING_RE.sub('', ''.join(out))

    def _filename(self, part: Message) -> Optional[str]:
        filename = part.get_filename()
        if filename is None:
            return None
        return self._header_text(filename) or None

    def _body_text(self, part: Message) -> str:
        payload = part.get_payload(decode=True) or b''
        return decode_bytes_detected(payload, part.get_content_charset())


def mojibake_score(message: DecodedMessage) -> int:
    """
    Sum of mojibake pairs and undecodable characters over the user-visible
    text fields.

    Each field is capped to its first SCORE_SAMPLE_CHARS characters.
    """
    fields = (
        message.subject,
        message.text_body,
        message.html_body,
        message.from_text,
        message.to_text,
        message.cc_text,
    )
    score = 0
    for value in fields:
        if value:
            sample = value[:SCORE_SAMPLE_CHARS]
            score += count_mojibake_pairs(sample) + count_undecodable(sample)
    return score


def raw_subject_line(msg: Message) -> Optional[str]:
    """
    Return the unfolded raw Subject value, 8-bit bytes mapped to Latin-1.

    Mapping each raw byte to one code point lets the normalizer repair
    unencoded UTF-8 subjects afterwards.
    """
    for name, value in msg.raw_items():
        if name.lower() != 'subject':
            continue
        if not isinstance(value, str):
            value = str(value)
        value = value.encode('ascii', 'surrogateescape').decode('latin-1')
        value = _FOLDING_RE.sub('', value).strip()
        return value or None
    return None


def decode_encoded_words(raw: str) -> str:
    """
    Decode RFC 2047 encoded words in a raw header value.

    Returns the raw text when the encoded words are invalid.
    """
    try:
        fragments = decode_header(raw)
    except HeaderParseError:
        return raw

    out = []
    for fragment, charset in fragments:
        if isinstance(fragment, str):
            out.append(fragment)
            continue
        try:
            out.append(fragment.decode(charset or 'latin-1', errors='replace'))
        except LookupError:
            out.append(fragment.decode('latin-1'))
    return ''.join(out)


def choose_best_subject(parsed_subject: str, header_line_subject: Optional[str]) -> str:
    """Prefer the raw-line decode only when it scores strictly better."""
    parsed_candidate = normalize_header(parsed_subject or '')
    header_candidate = normalize_header(header_line_subject or '')

    if header_candidate and text_quality_score(header_candidate) < text_quality_score(parsed_candidate):
        return header_candidate

    return parsed_candidate


class MimeDecoder:
    """
    Decodes raw messages, picking the better of two decode strategies.

    Args:
        primary: Strategy tried first (wins ties)
        fallback: Strategy used when primary output looks garbled or fails
                  with a charset error; None disables the fallback
        max_bytes: Reject raw messages larger than this (None = no limit)
    """

    def __init__(
        self,
        primary: DecodeStrategy,
        fallback: Optional[DecodeStrategy] = None,
        max_bytes: Optional[int] = None
    ):
        self.primary = primary
        self.fallback = fallback
        self.max_bytes = max_bytes

    def decode(self, raw: Any) -> DecodedMessage:
        """
        Decode a raw message into a normalized DecodedMessage.

        Args:
            raw: Raw message bytes

        Returns:
            DecodedMessage: Decoded, normalized message

        Raises:
            MessageTooLargeError: If raw exceeds max_bytes
            ParseError: If raw is not a valid message
        """
        if isinstance(raw, (bytearray, memoryview)):
            raw = bytes(raw)
        if not isinstance(raw, bytes):
            raise ParseError(f"Raw message must be bytes, got: {type(raw).__name__}")

        if self.max_bytes is not None and len(raw) > self.max_bytes:
            raise MessageTooLargeError(len(raw), self.max_bytes)

        if not raw.strip():
            raise ParseError("Raw message is empty")

        decoded, msg = self._decode_best(raw)

        if not decoded.headers:
            raise ParseError("Raw message has no header fields")

        decoded.subject = choose_best_subject(decoded.subject, self._subject_from_raw(msg))
        return self._normalize(decoded)

    def _decode_best(self, raw: bytes) -> Tuple[DecodedMessage, Message]:
        try:
            primary_result = self.primary.decode(raw)
        except Exception as e:
            if self.fallback is None or not is_charset_decode_error(e):
                raise ParseError(f"Failed to parse message: {e}") from e
            logger.warning(
                f"mime_parse_fallback: {self.primary.name} parsing failed, "
                f"retrying with {self.fallback.name}: {e}"
            )
            try:
                return self.fallback.decode(raw)
            except Exception as fallback_error:
                raise ParseError(f"Failed to parse message: {fallback_error}") from fallback_error

        primary_score = mojibake_score(primary_result[0])
        if primary_score == 0 or self.fallback is None:
            return primary_result

        try:
            fallback_result = self.fallback.decode(raw)
        except Exception as e:
            logger.warning(f"mime_parse_fallback: {self.fallback.name} parsing failed: {e}")
            return primary_result

        fallback_score = mojibake_score(fallback_result[0])
        if fallback_score < primary_score:
            logger.warning(
                f"mime_parse_fallback: {self.primary.name} output looked mojibake-prone "
                f"(score {primary_score}), using {self.fallback.name} result (score {fallback_score})"
            )
            return fallback_result

        return primary_result

    @staticmethod
    def _subject_from_raw(msg: Message) -> Optional[str]:
        raw = raw_subject_line(msg)
        if raw is None:
            return None
        return decode_encoded_words(raw)

    @staticmethod
    def _normalize(decoded: DecodedMessage) -> DecodedMessage:
        def clean(value):
            return normalize_header(restore_raw_bytes(value))

        decoded.from_text = clean(decoded.from_text)
        decoded.to_text = clean(decoded.to_text)
        decoded.cc_text = clean(decoded.cc_text)
        decoded.subject = clean(decoded.subject)
        decoded.text_body = clean(decoded.text_body)
        decoded.html_body = clean(decoded.html_body)
        decoded.headers = {name: clean(value) for name, value in decoded.headers.items()}
        for attachment in decoded.attachments:
            attachment.filename = clean(attachment.filename)
        return decoded


def create_decoder(max_bytes: Optional[int] = None, fallback_only: bool = False) -> MimeDecoder:
    """
    Build the decoder from configuration.

    Args:
        max_bytes: Raw size limit
        fallback_only: Decode with the detected-charset strategy alone

    Returns:
        MimeDecoder: Configured decoder
    """
    if fallback_only:
        return MimeDecoder(DetectedCharsetStrategy(), None, max_bytes=max_bytes)
    return MimeDecoder(NativeCharsetStrategy(), DetectedCharsetStrategy(), max_bytes=max_bytes)
