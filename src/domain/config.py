"""
Worker configuration.

Environment variables are resolved once into an immutable WorkerConfig
before the worker starts. Unparseable numeric or boolean values fall back
to their defaults rather than failing; only the values the worker cannot
run without are validated.
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when worker configuration is invalid or missing."""
    pass


DEFAULT_WEBHOOK_URL = 'https://elektrine.com/api/haraka/inbound'
DEFAULT_REDIS_URL = 'redis://redis:6379'
DEFAULT_QUEUE_NAME = 'elektrine:inbound'
DEFAULT_DLQ_NAME = 'elektrine:inbound:dlq'
DEFAULT_MAX_RAW_BYTES = 25 * 1024 * 1024

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off')


def to_int(value: Optional[str], fallback: int) -> int:
    """Parse an integer, returning fallback for missing or invalid input."""
    if value is None:
        return fallback
    try:
        return int(str(value).strip())
    except ValueError:
        return fallback


def to_bool(value: Optional[str], fallback: bool) -> bool:
    """Parse a boolean flag (1/true/yes/on, 0/false/no/off)."""
    if value is None:
        return fallback
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return fallback


@dataclass(frozen=True)
class WorkerConfig:
    """
    Immutable worker configuration.

    Attributes:
        webhook_url: Downstream delivery endpoint
        api_key: API key sent as X-API-Key to the endpoint
        redis_url: Queue store connection string
        queue_name: Inbound queue (Redis list) name
        dlq_name: Dead-letter queue name
        pop_timeout_seconds: Blocking dequeue timeout
        max_raw_bytes: Largest raw message the decoder accepts
        webhook_timeout_seconds: Per-request HTTP timeout
        webhook_max_retries: Retries after the first delivery attempt
        retry_base_delay_seconds: Base for exponential backoff
        webhook_enabled: Inbound processing switch
        include_headers: Send the header mapping downstream
        include_body: Send text/HTML bodies downstream
        include_attachments: Send base64 attachment content downstream
        stats_interval_seconds: Counter reporting interval
        mime_fallback_only: Decode with the detected-charset strategy only
        log_level: Root logging level name
    """
    webhook_url: str = DEFAULT_WEBHOOK_URL
    api_key: str = ''
    redis_url: str = DEFAULT_REDIS_URL
    queue_name: str = DEFAULT_QUEUE_NAME
    dlq_name: str = DEFAULT_DLQ_NAME
    pop_timeout_seconds: int = 5
    max_raw_bytes: int = DEFAULT_MAX_RAW_BYTES
    webhook_timeout_seconds: float = 30.0
    webhook_max_retries: int = 5
    retry_base_delay_seconds: float = 1.0
    webhook_enabled: bool = True
    include_headers: bool = True
    include_body: bool = True
    include_attachments: bool = True
    stats_interval_seconds: int = 60
    mime_fallback_only: bool = False
    log_level: str = 'INFO'

    def validate(self) -> 'WorkerConfig':
        """
        Check the settings the worker cannot start without.

        Returns:
            WorkerConfig: self, for chaining

        Raises:
            ConfigurationError: If the API key or webhook URL is missing or
                invalid, or inbound processing is disabled
        """
        if not self.api_key:
            raise ConfigurationError(
                "PHOENIX_API_KEY environment variable is required but not set."
            )

        if not self.webhook_url:
            raise ConfigurationError(
                "PHOENIX_WEBHOOK_URL environment variable is required but not set."
            )

        scheme = urlparse(self.webhook_url).scheme
        if scheme not in ('http', 'https'):
            raise ConfigurationError(
                f"PHOENIX_WEBHOOK_URL has invalid scheme '{scheme}' "
                f"(only http/https allowed)"
            )

        if not self.webhook_enabled:
            raise ConfigurationError(
                "Inbound processing is disabled (WEBHOOK_ENABLED=false)"
            )

        if self.pop_timeout_seconds <= 0:
            raise ConfigurationError(
                f"ELEKTRINE_QUEUE_POP_TIMEOUT must be positive, "
                f"got: {self.pop_timeout_seconds}"
            )

        return self


def load_config(environ: Optional[Mapping[str, str]] = None) -> WorkerConfig:
    """
    Build WorkerConfig from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        WorkerConfig: Resolved, unvalidated configuration
    """
    env = os.environ if environ is None else environ
    defaults = WorkerConfig()

    api_key = env.get('PHOENIX_API_KEY') or env.get('HARAKA_API_KEY') or ''

    timeout_ms = to_int(env.get('WEBHOOK_TIMEOUT_MS'), int(defaults.webhook_timeout_seconds * 1000))
    base_delay_ms = to_int(env.get('WEBHOOK_RETRY_BASE_MS'), int(defaults.retry_base_delay_seconds * 1000))

    config = WorkerConfig(
        webhook_url=env.get('PHOENIX_WEBHOOK_URL', defaults.webhook_url),
        api_key=api_key,
        redis_url=env.get('REDIS_URL', defaults.redis_url),
        queue_name=env.get('ELEKTRINE_QUEUE_NAME', defaults.queue_name),
        dlq_name=env.get('ELEKTRINE_DLQ_NAME', defaults.dlq_name),
        pop_timeout_seconds=to_int(env.get('ELEKTRINE_QUEUE_POP_TIMEOUT'), defaults.pop_timeout_seconds),
        max_raw_bytes=to_int(env.get('ELEKTRINE_QUEUE_MAX_RAW_BYTES'), defaults.max_raw_bytes),
        webhook_timeout_seconds=timeout_ms / 1000.0,
        webhook_max_retries=max(0, to_int(env.get('WEBHOOK_MAX_RETRIES'), defaults.webhook_max_retries)),
        retry_base_delay_seconds=max(0, base_delay_ms) / 1000.0,
        webhook_enabled=to_bool(env.get('WEBHOOK_ENABLED'), defaults.webhook_enabled),
        include_headers=to_bool(env.get('HARAKA_INCLUDE_HEADERS'), defaults.include_headers),
        include_body=to_bool(env.get('HARAKA_INCLUDE_BODY'), defaults.include_body),
        include_attachments=to_bool(env.get('HARAKA_INCLUDE_ATTACHMENTS'), defaults.include_attachments),
        stats_interval_seconds=to_int(env.get('WORKER_STATS_INTERVAL'), defaults.stats_interval_seconds),
        mime_fallback_only=to_bool(env.get('MIME_FALLBACK_ONLY'), defaults.mime_fallback_only),
        log_level=env.get('LOG_LEVEL', defaults.log_level).upper(),
    )

    logger.debug(
        f"Configuration loaded: queue={config.queue_name}, dlq={config.dlq_name}, "
        f"webhook_url={config.webhook_url}, max_retries={config.webhook_max_retries}"
    )
    return config
