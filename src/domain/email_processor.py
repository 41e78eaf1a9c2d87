"""
Email processing pipeline - core business logic.

This module handles the end-to-end processing of one queue element:
1. Parse the queue entry
2. Decode the raw MIME message
3. Classify (spam signals, attachments, bounce)
4. Deliver to the downstream webhook
5. Dead-letter the entry if anything in steps 2-4 fails

All errors are caught and returned as ProcessingResult.
No exceptions propagate out of the public methods.
"""

import logging
from typing import Any, Optional

from .config import WorkerConfig
from .models import (
    DeadLetterEntry,
    DecodedMessage,
    DeliveryPayload,
    MalformedEntryError,
    ProcessingResult,
    QueueEntry,
    WorkerCounters,
    utc_now_iso,
)
from services import attachment as attachment_service
from services import bounce as bounce_service
from services import spam as spam_service
from services.email import MimeDecoder
from services.text import normalize_header

logger = logging.getLogger(__name__)


class EmailProcessor:
    """
    Handles the pipeline for a single queue element.

    Collaborators are injected so the worker owns their lifecycle and
    tests can substitute fakes.
    """

    def __init__(
        self,
        config: WorkerConfig,
        queue_client: Any,
        delivery_client: Any,
        decoder: MimeDecoder,
        counters: Optional[WorkerCounters] = None
    ):
        self.config = config
        self.queue_client = queue_client
        self.delivery_client = delivery_client
        self.decoder = decoder
        self.counters = counters if counters is not None else WorkerCounters()

    def process(self, raw_element: Any) -> ProcessingResult:
        """
        Process one serialized queue element.

        Args:
            raw_element: JSON text (str or bytes) popped from the inbound queue

        Returns:
            ProcessingResult: delivered, skipped_bounce, dead_lettered or dropped
        """
        self.counters.increment('consumed')

        try:
            entry = QueueEntry.from_json(raw_element)
        except MalformedEntryError as e:
            self.counters.increment('failed')
            logger.error(f"invalid_queue_payload: {e}")
            return ProcessingResult(outcome=ProcessingResult.DROPPED, error_message=str(e))

        logger.info(f"Processing queue entry: {entry.message_id}")

        try:
            decoded = self.decoder.decode(entry.raw_bytes())
            logger.info(
                f"Decoded: subject={decoded.subject!r}, text={len(decoded.text_body)}, "
                f"html={len(decoded.html_body)}, attachments={len(decoded.attachments)}"
            )

            payload = self.build_payload(entry, decoded)

            if payload.is_bounce:
                self.counters.increment('skipped_bounce')
                logger.info(f"skip_bounce: message_id={payload.message_id}, subject={payload.subject!r}")
                return ProcessingResult(
                    outcome=ProcessingResult.SKIPPED_BOUNCE,
                    message_id=entry.message_id
                )

            self.delivery_client.deliver(payload)
            self.counters.increment('delivered')
            logger.info(
                f"webhook_delivered: message_id={payload.message_id}, "
                f"rcpt_to={payload.rcpt_to}, attachment_count={payload.attachment_count}"
            )
            return ProcessingResult(outcome=ProcessingResult.DELIVERED, message_id=entry.message_id)

        except Exception as e:
            self.counters.increment('failed')
            logger.error(
                f"process_failed: message_id={entry.message_id}, "
                f"status={getattr(e, 'status', None)}, error={e}",
                exc_info=True
            )
            self._dead_letter(entry, e)

            return ProcessingResult(
                outcome=ProcessingResult.DEAD_LETTERED,
                message_id=entry.message_id,
                error_message=str(e)
            )

    def build_payload(self, entry: QueueEntry, decoded: DecodedMessage) -> DeliveryPayload:
        """
        Assemble the webhook payload from the entry and its decoded message.

        Args:
            entry: Parsed queue entry (envelope data)
            decoded: Decoder output

        Returns:
            DeliveryPayload: Payload ready for delivery
        """
        first_rcpt = entry.rcpt_to[0] if entry.rcpt_to else ''

        from_email = normalize_header(decoded.from_text or entry.mail_from)
        to_email = normalize_header(decoded.to_text or first_rcpt)
        mail_from = normalize_header(entry.mail_from or '')
        subject = normalize_header(decoded.subject or '')

        include_body = self.config.include_body
        text_body = decoded.text_body if include_body else ''
        html_body = decoded.html_body if include_body else ''

        transaction_notes = {}
        if entry.spamassassin is not None:
            transaction_notes['spamassassin'] = entry.spamassassin.as_notes()
        spam_info = spam_service.extract({}, transaction_notes, decoded.headers)

        attachments = attachment_service.extract(
            decoded,
            include_content=self.config.include_attachments
        )

        bounce = bounce_service.is_bounce(
            from_email,
            subject,
            decoded.text_body,
            envelope_from=mail_from
        )

        return DeliveryPayload(
            message_id=entry.message_id,
            from_address=from_email,
            to_address=to_email,
            rcpt_to=normalize_header(first_rcpt),
            mail_from=mail_from,
            subject=subject,
            text_body=text_body,
            html_body=html_body,
            headers=dict(decoded.headers) if self.config.include_headers else None,
            spam_status=spam_info.status,
            spam_score=spam_info.score,
            spam_threshold=spam_info.threshold,
            spam_report=spam_info.report,
            spam_status_header=spam_info.status_header,
            attachments=attachments.attachments,
            attachment_count=attachments.count,
            has_attachments=attachments.has_attachments,
            size=entry.data_bytes,
            timestamp=utc_now_iso(),
            is_bounce=bounce,
        )

    def _dead_letter(self, entry: QueueEntry, error: Exception) -> None:
        """Write the failed entry to the DLQ; a write failure is logged only."""
        dead_letter = DeadLetterEntry.from_failure(entry, error)
        try:
            self.queue_client.enqueue_dlq(self.config.dlq_name, dead_letter)
        except Exception as dlq_error:
            logger.error(f"dlq_write_failed: message_id={entry.message_id}, error={dlq_error}")
            return

        self.counters.increment('dlq')
        logger.warning(f"Dead-lettered {entry.message_id} to {self.config.dlq_name}")
