"""
Attachment extraction for the delivery payload.

Reduces decoded MIME attachments to the metadata (and optionally base64
content) the downstream application receives. When full MIME attachments
are unavailable, metadata recorded by an upstream scanning stage is used.
"""

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from domain.models import DecodedAttachment, DecodedMessage

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = 'application/octet-stream'


@dataclass
class AttachmentSummary:
    """
    Attachments ready for the payload.

    Attributes:
        attachments: Formatted attachment dicts
        count: Number of attachments
        has_attachments: True if count > 0
    """
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    count: int = 0

    @property
    def has_attachments(self) -> bool:
        return self.count > 0


def to_base64(content: Union[bytes, str, None]) -> Optional[str]:
    """
    Convert content to a base64 string.

    Args:
        content: Binary or text content

    Returns:
        Base64 text, or None for empty or unsupported content
    """
    if not content:
        return None
    if isinstance(content, str):
        content = content.encode('utf-8')
    if isinstance(content, (bytes, bytearray)):
        return base64.b64encode(content).decode('ascii')
    return None


def format_attachment(att: DecodedAttachment, index: int, include_content: bool) -> Dict[str, Any]:
    """
    Format a single attachment for API transmission.

    Args:
        att: Decoded attachment
        index: Position used for the placeholder filename
        include_content: Include base64 content

    Returns:
        Dict with filename, content_type, size, content_id, content,
        encoding and index
    """
    content = att.content
    return {
        'filename': att.filename or f"attachment_{index}",
        'content_type': att.content_type or DEFAULT_CONTENT_TYPE,
        'size': att.size or (len(content) if content else 0),
        'content_id': att.content_id,
        'content': to_base64(content) if include_content else None,
        'encoding': 'base64',
        'index': index,
    }


def _format_scanner_file(file: Mapping[str, Any], index: int) -> Dict[str, Any]:
    # No content is available from scanner notes
    return {
        'filename': file.get('filename') or file.get('name') or f"attachment_{index}",
        'content_type': file.get('ctype') or file.get('content_type') or DEFAULT_CONTENT_TYPE,
        'size': file.get('bytes') or file.get('size') or 0,
        'md5': file.get('md5'),
        'content': None,
        'encoding': 'base64',
        'index': index,
    }


def extract(
    decoded_message: Optional[DecodedMessage],
    include_content: bool = True,
    attachment_notes: Optional[Mapping[str, Any]] = None
) -> AttachmentSummary:
    """
    Extract attachment information from a decoded message.

    Args:
        decoded_message: Decoder output (primary source)
        include_content: Include base64 content (omit to shrink payloads)
        attachment_notes: Upstream scanner notes with a "files" list
                          (fallback source)

    Returns:
        AttachmentSummary: Formatted attachments and count
    """
    summary = AttachmentSummary()

    if decoded_message is not None and decoded_message.attachments:
        summary.attachments = [
            format_attachment(att, index, include_content)
            for index, att in enumerate(decoded_message.attachments)
        ]

    elif attachment_notes and isinstance(attachment_notes.get('files'), list):
        logger.debug("Using attachment scanner notes fallback")
        summary.attachments = [
            _format_scanner_file(file, index)
            for index, file in enumerate(attachment_notes['files'])
            if isinstance(file, Mapping)
        ]

    summary.count = len(summary.attachments)

    if summary.count:
        with_content = sum(1 for a in summary.attachments if a['content'])
        logger.debug(f"Attachments: {summary.count}, with content: {with_content}")

    return summary


def get_total_size(attachments: Optional[Iterable[Mapping[str, Any]]]) -> int:
    """Sum of attachment sizes in bytes."""
    if not attachments:
        return 0
    return sum(att.get('size') or 0 for att in attachments)


def has_oversized(attachments: Optional[Iterable[Mapping[str, Any]]], max_size: int) -> bool:
    """Check if any attachment exceeds max_size bytes."""
    if not attachments:
        return False
    return any((att.get('size') or 0) > max_size for att in attachments)


def filter_by_type(
    attachments: Optional[Iterable[Mapping[str, Any]]],
    content_types: Union[str, List[str]]
) -> List[Mapping[str, Any]]:
    """
    Filter attachments by content type substring.

    Args:
        attachments: Formatted attachments
        content_types: Type or list of types, e.g. "image/" or ["pdf", "zip"]

    Returns:
        List of matching attachments
    """
    if not attachments:
        return []

    types = [content_types] if isinstance(content_types, str) else list(content_types)
    types = [t.lower() for t in types]

    return [
        att for att in attachments
        if any(t in (att.get('content_type') or '').lower() for t in types)
    ]


