"""
Inbound mail queue worker.

Long-running process that pops accepted messages from the Redis inbound
queue, decodes and classifies them, and delivers them to the downstream
webhook. Thin orchestration layer that delegates to EmailProcessor.
Policy: one message in flight; failed messages go to the DLQ.
"""

import logging
import signal
import sys
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

from domain.config import ConfigurationError, WorkerConfig, load_config
from domain.email_processor import EmailProcessor
from domain.models import ProcessingResult, WorkerCounters
from integrations.webhook_delivery import DeliveryClient
from services.email import create_decoder
from services.queue import QueueClient, TransportError

logger = logging.getLogger(__name__)

ERROR_BACKOFF_SECONDS = 1.0


def configure_logging(level: str = 'INFO') -> None:
    """Configure the root logger once for the worker process."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not root.handlers:
        console_handler = logging.StreamHandler()
        formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s - %(message)s')
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)


class WorkerState(Enum):
    STARTING = 'starting'
    RUNNING = 'running'
    DRAINING = 'draining'
    STOPPED = 'stopped'


class StatsReporter:
    """Daemon thread logging a counter snapshot at a fixed interval."""

    def __init__(self, counters: WorkerCounters, interval_seconds: float):
        self.counters = counters
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.interval_seconds <= 0:
            logger.info("Stats reporter disabled")
            return
        self._thread = threading.Thread(target=self._run, name='worker-stats', daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.report()

    def report(self) -> None:
        stats = ', '.join(f"{name}={value}" for name, value in self.counters.snapshot().items())
        logger.info(f"worker_stats: {stats}")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None


class Worker:
    """
    Queue consumer with a cooperative shutdown.

    States: STARTING -> RUNNING -> DRAINING -> STOPPED. A shutdown request
    only sets the draining flag; the message currently being processed is
    always finished first.
    """

    def __init__(
        self,
        config: WorkerConfig,
        queue_client: Optional[QueueClient] = None,
        delivery_client: Optional[DeliveryClient] = None,
        counters: Optional[WorkerCounters] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config
        self.queue_client = queue_client
        self.delivery_client = delivery_client
        self.counters = counters if counters is not None else WorkerCounters()
        self.processor: Optional[EmailProcessor] = None
        self.state = WorkerState.STARTING
        self._draining = threading.Event()
        self._sleep = sleep
        self._stats = StatsReporter(self.counters, config.stats_interval_seconds)

    @property
    def draining(self) -> bool:
        return self._draining.is_set()

    def request_shutdown(self, signum: Optional[int] = None, frame: Any = None) -> None:
        """Stop taking new messages; safe to call from a signal handler."""
        if signum is not None:
            logger.info(f"Received signal {signum}, draining")
        self._draining.set()
        if self.state == WorkerState.RUNNING:
            self.state = WorkerState.DRAINING

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self.request_shutdown)
        signal.signal(signal.SIGINT, self.request_shutdown)

    def start(self) -> None:
        """
        Validate configuration and build collaborators.

        Raises:
            ConfigurationError: If required configuration is missing
        """
        self.config.validate()

        if self.queue_client is None:
            self.queue_client = QueueClient(self.config.redis_url)

        if self.delivery_client is None:
            self.delivery_client = DeliveryClient(
                self.config.webhook_url,
                self.config.api_key,
                timeout=self.config.webhook_timeout_seconds,
                max_retries=self.config.webhook_max_retries,
                base_delay=self.config.retry_base_delay_seconds,
                on_retry=self._count_retry,
            )

        decoder = create_decoder(
            max_bytes=self.config.max_raw_bytes,
            fallback_only=self.config.mime_fallback_only
        )

        self.processor = EmailProcessor(
            self.config,
            self.queue_client,
            self.delivery_client,
            decoder,
            self.counters
        )

        self.state = WorkerState.RUNNING

    def _count_retry(self, attempt: int, error: Exception) -> None:
        self.counters.increment('retried')

    def run_once(self) -> Optional[ProcessingResult]:
        """
        One loop cycle: pop with timeout, process what was popped.

        Returns:
            ProcessingResult, or None on timeout or queue failure
        """
        try:
            raw = self.queue_client.dequeue(self.config.queue_name, self.config.pop_timeout_seconds)
        except TransportError as e:
            logger.error(f"Queue read failed: {e}")
            self._sleep(ERROR_BACKOFF_SECONDS)
            return None

        if raw is None:
            return None

        result = self.processor.process(raw)

        if result.success:
            logger.info(f"✓ {result}")
        else:
            logger.warning(f"⚠ {result}")

        return result

    def run(self) -> None:
        """
        Run until a shutdown is requested.

        Raises:
            ConfigurationError: If configuration is invalid (state stays STARTING)
        """
        self.start()

        logger.info("=" * 70)
        logger.info(
            f"worker_start: queue={self.config.queue_name}, dlq={self.config.dlq_name}, "
            f"redis_url={self.config.redis_url}, webhook_url={self.config.webhook_url}, "
            f"max_retries={self.config.webhook_max_retries}"
        )
        logger.info("=" * 70)

        self._stats.start()
        try:
            while not self.draining:
                try:
                    self.run_once()
                except Exception as e:
                    logger.error(f"worker_loop_error: {e}", exc_info=True)
                    self._sleep(ERROR_BACKOFF_SECONDS)
        finally:
            self.state = WorkerState.DRAINING
            self.stop()

    def stop(self) -> None:
        """Stop the reporter and close clients; leaves the worker STOPPED."""
        self._stats.stop()
        self._stats.report()

        if self.queue_client is not None:
            self.queue_client.close()
        if self.delivery_client is not None:
            self.delivery_client.close()

        self.state = WorkerState.STOPPED
        logger.info("=" * 70)
        logger.info("Worker stopped")
        logger.info("=" * 70)


def main(environ=None) -> int:
    """
    Console entry point.

    Returns:
        int: Process exit status (1 on configuration errors)
    """
    config = load_config(environ)
    configure_logging(config.log_level)

    worker = Worker(config)
    worker.install_signal_handlers()

    try:
        worker.run()
    except ConfigurationError as e:
        logger.error(f"missing_required_config: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
