"""
Queue depth check for monitoring.

Reads the inbound queue and DLQ lengths and reports through the exit code:
    0  OK
    1  WARNING: inbound depth >= QUEUE_WARN_THRESHOLD
    2  CRITICAL: DLQ depth >= DLQ_CRIT_THRESHOLD (checked first)
    3  depths could not be read
"""

import logging
import os
import sys
from typing import Mapping, Optional

from domain.config import DEFAULT_DLQ_NAME, DEFAULT_QUEUE_NAME, DEFAULT_REDIS_URL, to_int
from services.queue import QueueClient, TransportError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_WARNING = 1
EXIT_CRITICAL = 2
EXIT_ERROR = 3

DEFAULT_QUEUE_WARN_THRESHOLD = 1000
DEFAULT_DLQ_CRIT_THRESHOLD = 10


def evaluate(inbound_depth: int, dlq_depth: int, warn_threshold: int, crit_threshold: int) -> int:
    """Map depths to an exit status; the DLQ check takes precedence."""
    if dlq_depth >= crit_threshold:
        return EXIT_CRITICAL
    if inbound_depth >= warn_threshold:
        return EXIT_WARNING
    return EXIT_OK


def check(
    queue_client: QueueClient,
    queue_name: str,
    dlq_name: str,
    warn_threshold: int = DEFAULT_QUEUE_WARN_THRESHOLD,
    crit_threshold: int = DEFAULT_DLQ_CRIT_THRESHOLD
) -> int:
    """
    Read both depths and print a status report.

    Returns:
        int: Exit status
    """
    try:
        inbound_depth = queue_client.depth(queue_name)
        dlq_depth = queue_client.depth(dlq_name)
    except TransportError as e:
        print(f"ERROR: failed to read queue depth: {e}")
        logger.debug("Queue depth read failed", exc_info=True)
        return EXIT_ERROR

    print(f"inbound_queue={queue_name} depth={inbound_depth}")
    print(f"dlq_queue={dlq_name} depth={dlq_depth}")

    status = evaluate(inbound_depth, dlq_depth, warn_threshold, crit_threshold)

    if status == EXIT_CRITICAL:
        print(f"CRITICAL: DLQ depth {dlq_depth} >= {crit_threshold}")
    elif status == EXIT_WARNING:
        print(f"WARNING: inbound queue depth {inbound_depth} >= {warn_threshold}")
    else:
        print("OK: queue depths are within thresholds")

    return status


def main(environ: Optional[Mapping[str, str]] = None, queue_client: Optional[QueueClient] = None) -> int:
    """Console entry point."""
    env = os.environ if environ is None else environ

    logging.basicConfig(level=logging.WARNING)

    client = queue_client or QueueClient(env.get('REDIS_URL', DEFAULT_REDIS_URL))
    try:
        return check(
            client,
            env.get('ELEKTRINE_QUEUE_NAME', DEFAULT_QUEUE_NAME),
            env.get('ELEKTRINE_DLQ_NAME', DEFAULT_DLQ_NAME),
            warn_threshold=to_int(env.get('QUEUE_WARN_THRESHOLD'), DEFAULT_QUEUE_WARN_THRESHOLD),
            crit_threshold=to_int(env.get('DLQ_CRIT_THRESHOLD'), DEFAULT_DLQ_CRIT_THRESHOLD),
        )
    finally:
        client.close()


if __name__ == '__main__':
    sys.exit(main())
