"""
Redis-backed FIFO job queue.

Producers LPUSH JSON payloads and consumers BRPOP them, so the oldest message
is popped first and each message goes to exactly one consumer. There is no
acknowledgement: a consumer that dies after popping loses the message.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import redis
from omegaconf import DictConfig

from .errors import QueueError

logger = logging.getLogger(__name__)


def build_redis_client(queue_config: DictConfig) -> redis.Redis:
    # from_url does not open a socket; the first command does
    return redis.Redis.from_url(queue_config.url, decode_responses=True)


class JobQueue:
    def __init__(self, client: redis.Redis, key_prefix: str = "queue:") -> None:
        self.client = client
        self.key_prefix = key_prefix

    def _key(self, queue_name: str) -> str:
        return f"{self.key_prefix}{queue_name}"

    def enqueue(self, queue_name: str, payload: Dict[str, Any]) -> None:
        try:
            self.client.lpush(self._key(queue_name), json.dumps(payload))
        except redis.RedisError as exc:
            raise QueueError(f"enqueue to {queue_name} failed: {exc}") from exc

    def dequeue(self, queue_name: str, timeout_seconds: float) -> Optional[Dict[str, Any]]:
        """
        Block up to ``timeout_seconds`` for the next message.

        Returns:
            The decoded payload, or None when the wait timed out
        """
        try:
            result = self.client.brpop([self._key(queue_name)], timeout=timeout_seconds)
        except redis.RedisError as exc:
            raise QueueError(f"dequeue from {queue_name} failed: {exc}") from exc
        if result is None:
            return None
        _, raw = result
        return self._decode(queue_name, raw)

    def pop(self, queue_name: str) -> Optional[Dict[str, Any]]:
        """Non-blocking pop of the oldest message."""
        try:
            raw = self.client.rpop(self._key(queue_name))
        except redis.RedisError as exc:
            raise QueueError(f"pop from {queue_name} failed: {exc}") from exc
        return self._decode(queue_name, raw) if raw is not None else None

    def _decode(self, queue_name: str, raw: str) -> Dict[str, Any]:
        # Already popped; anything that is not a JSON object is handed on
        # wrapped so the consumer can dead-letter or skip it
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.error(f"Malformed message on {queue_name}: {raw!r}")
            return {"raw": raw}
        if not isinstance(payload, dict):
            logger.error(f"Message on {queue_name} is not a JSON object: {raw!r}")
            return {"raw": raw}
        return payload

    def length(self, queue_name: str) -> int:
        try:
            return int(self.client.llen(self._key(queue_name)))
        except redis.RedisError as exc:
            raise QueueError(f"llen on {queue_name} failed: {exc}") from exc

    def close(self) -> None:
        self.client.close()
