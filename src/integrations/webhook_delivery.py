"""
Webhook Delivery Module

POSTs normalized messages to the downstream application over a pooled
keep-alive HTTP client, retrying transient failures with exponential
backoff.

Usage:
    from integrations.webhook_delivery import DeliveryClient

    client = DeliveryClient(url, api_key)
    client.deliver(payload)   # raises DeliveryError on final failure
    client.close()
"""

import logging
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = 'Elektrine-Inbound-Worker/1.0'


# ============================================================================
# Custom Exception Classes
# ============================================================================

class DeliveryError(Exception):
    """
    Raised when the downstream application does not accept a payload.

    Attributes:
        status: HTTP status code, or None for network errors and timeouts
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def is_permanent(self) -> bool:
        """4xx responses other than 429 will not succeed on retry."""
        return self.status is not None and 400 <= self.status < 500 and self.status != 429


# ============================================================================
# Delivery Client
# ============================================================================

class DeliveryClient:
    """
    Retrying webhook client.

    Attempts run from 0 to max_retries inclusive. Permanent errors are raised
    immediately; anything else sleeps base_delay * 2**attempt and retries.
    When attempts are exhausted the last error is raised.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout: float = 30.0,
        max_retries: int = 5,
        base_delay: float = 1.0,
        on_retry: Optional[Callable[[int, DeliveryError], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        transport: Optional[httpx.BaseTransport] = None
    ):
        scheme = urlparse(url or '').scheme
        if scheme not in ('http', 'https'):
            raise ValueError(f"Webhook URL must use http or https, got: '{url}'")

        self.url = url
        self.api_key = api_key
        self.max_retries = max(0, max_retries)
        self.base_delay = base_delay
        self.on_retry = on_retry
        self._sleep = sleep

        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={
                'Content-Type': 'application/json',
                'User-Agent': USER_AGENT,
                'X-API-Key': api_key,
            },
        )

        logger.info(
            f"Delivery client initialized: url={url}, timeout={timeout}s, "
            f"max_retries={self.max_retries}, base_delay={base_delay}s"
        )

    def _post(self, body: Dict[str, Any], message_id: str) -> int:
        """Single POST attempt; returns the status code or raises DeliveryError."""
        try:
            response = self._client.post(
                self.url,
                json=body,
                headers={
                    'X-Message-Id': message_id,
                    'X-Idempotency-Key': message_id,
                },
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Webhook timed out: {e}") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook request failed: {e}") from e

        if 200 <= response.status_code < 300:
            return response.status_code

        raise DeliveryError(
            f"Webhook returned {response.status_code}: {response.text[:200]}",
            status=response.status_code,
        )

    def deliver(self, payload: Any) -> int:
        """
        Deliver one payload.

        Args:
            payload: DeliveryPayload or dict with a message_id key

        Returns:
            int: HTTP status of the successful attempt

        Raises:
            DeliveryError: Permanent rejection or retries exhausted
        """
        body = payload.to_dict() if hasattr(payload, 'to_dict') else dict(payload)
        message_id = str(body.get('message_id') or '')

        last_error: Optional[DeliveryError] = None

        for attempt in range(self.max_retries + 1):
            try:
                status = self._post(body, message_id)
                logger.debug(f"Webhook accepted {message_id}: status={status}, attempt={attempt}")
                return status
            except DeliveryError as e:
                last_error = e

                if e.is_permanent:
                    logger.error(f"Webhook permanently rejected {message_id}: {e}")
                    raise

                if attempt >= self.max_retries:
                    break

                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"Webhook attempt {attempt + 1}/{self.max_retries + 1} failed for "
                    f"{message_id}: {e}; retrying in {delay:.2f}s"
                )
                if self.on_retry is not None:
                    self.on_retry(attempt, e)
                self._sleep(delay)

        logger.error(f"Webhook delivery exhausted retries for {message_id}: {last_error}")
        raise last_error

    def close(self) -> None:
        """Release pooled connections."""
        self._client.close()
