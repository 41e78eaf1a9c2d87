"""
Redis-backed queue client.

Queues are Redis lists: producers LPUSH onto the head, the worker BRPOPs
from the tail, giving FIFO order. BRPOP is atomic, so several worker
processes can consume the same list.

Usage:
    from services.queue import QueueClient

    client = QueueClient("redis://localhost:6379")
    client.enqueue("elektrine:inbound", entry)
    raw = client.dequeue("elektrine:inbound", timeout_seconds=5)
"""

import json
import logging
import threading
from typing import Any, Optional

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Raised when the queue store is unreachable or a command fails."""
    pass


def serialize(payload: Any) -> str:
    """
    Serialize a payload for the queue.

    Args:
        payload: dict, str (already serialized) or object with to_dict()

    Returns:
        str: JSON text
    """
    if isinstance(payload, str):
        return payload
    if hasattr(payload, 'to_dict'):
        payload = payload.to_dict()
    return json.dumps(payload)


class QueueClient:
    """
    Lazily connected, shared Redis client. Responses are not decoded.

    The connection is created on first use and reused afterwards. A lock
    ensures concurrent callers share a single connect attempt. Connection
    failures reset the cached client so the next call reconnects. The
    client never retries; callers decide what to do with TransportError.
    """

    def __init__(self, redis_url: str, socket_connect_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_connect_timeout = socket_connect_timeout
        self._client: Optional[redis.Redis] = None
        self._lock = threading.Lock()
        self._ever_connected = False

    def _connect(self) -> redis.Redis:
        with self._lock:
            if self._client is not None:
                return self._client

            if self._ever_connected:
                logger.warning(f"Queue reconnecting: {self.redis_url}")

            try:
                client = redis.Redis.from_url(
                    self.redis_url,
                    decode_responses=False,
                    socket_connect_timeout=self.socket_connect_timeout,
                )
                client.ping()
            except RedisError as e:
                logger.error(f"Queue connection failed: {e}")
                raise TransportError(f"Cannot connect to Redis at {self.redis_url}: {e}") from e

            self._client = client
            self._ever_connected = True
            logger.info(f"Queue connected: {self.redis_url}")
            return client

    def _drop_client(self) -> bool:
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return False
        try:
            client.close()
        except RedisError as e:
            logger.debug(f"Ignoring error while closing queue connection: {e}")
        return True

    def _execute(self, operation: str, func):
        client = self._connect()
        try:
            return func(client)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning(f"Queue {operation} failed, dropping connection: {e}")
            self._drop_client()
            raise TransportError(f"Redis {operation} failed: {e}") from e
        except RedisError as e:
            raise TransportError(f"Redis {operation} failed: {e}") from e

    def enqueue(self, queue_name: str, payload: Any) -> int:
        """
        Push a payload onto the head of a queue.

        Args:
            queue_name: Redis list key
            payload: dict, JSON text or object with to_dict()

        Returns:
            int: Queue length after the push

        Raises:
            TransportError: If Redis is unreachable
        """
        data = serialize(payload)
        return self._execute('enqueue', lambda c: c.lpush(queue_name, data))

    def dequeue(self, queue_name: str, timeout_seconds: int) -> Optional[bytes]:
        """
        Pop the oldest element of a queue, blocking up to timeout_seconds.

        Elements are returned undecoded; the caller decides what to do with
        bytes that are not valid UTF-8.

        Returns:
            The raw serialized entry, or None on timeout
        """
        result = self._execute('dequeue', lambda c: c.brpop([queue_name], timeout=timeout_seconds))
        if result is None:
            return None
        # BRPOP returns (key, value)
        _, value = result
        return value

    def enqueue_dlq(self, dlq_name: str, payload: Any) -> int:
        """Write a dead-letter entry."""
        return self.enqueue(dlq_name, payload)

    def depth(self, queue_name: str) -> int:
        """Current number of elements in a queue."""
        return int(self._execute('depth', lambda c: c.llen(queue_name)))

    def close(self) -> None:
        """Close the connection; safe to call more than once."""
        if self._drop_client():
            logger.info("Queue connection closed")
