"""Sweep dispatch idempotency: redis SET NX EX with a bounded in-process fallback."""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Any, Optional

import redis

from .runtime import get_logger

logger = get_logger("idempotency")


class IdempotencyStore:
    """
    ``claim(key)`` returns True the first time a key is seen within the TTL.
    ``release(key)`` forgets a claim so a failed dispatch can be retried.
    """

    def __init__(self, client: Any = None, *, prefix: str = "intake", ttl_seconds: int = 24 * 60 * 60,
                 max_mem_size: int = 10000):
        self.r = client
        self.prefix = prefix
        self.ttl = ttl_seconds
        self._mem: "OrderedDict[str, bool]" = OrderedDict()
        self._max_mem_size = max_mem_size
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, cfg) -> "IdempotencyStore":
        client = None
        if cfg.REDIS_URL:
            url = cfg.REDIS_URL
            if cfg.REDIS_TLS and url.startswith("redis://"):
                url = "rediss://" + url[len("redis://"):]
            try:
                client = redis.from_url(url, decode_responses=True, socket_timeout=3)
            except (redis.RedisError, ValueError) as exc:
                logger.error("Redis init failed, using in-memory idempotency: %s", exc)
        return cls(client, prefix=cfg.REDIS_PREFIX, ttl_seconds=cfg.IDEMPOTENCY_TTL_HOURS * 3600)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:sent:{key}"

    def claim(self, key: str) -> bool:
        full = self._key(key)
        if self.r is not None:
            try:
                return bool(self.r.set(full, "1", nx=True, ex=self.ttl))
            except redis.RedisError as exc:
                logger.warning("Redis claim failed for %s, falling back to memory: %s", key, exc)

        with self._lock:
            if full in self._mem:
                return False
            if len(self._mem) >= self._max_mem_size:
                # drop the oldest 20%
                for _ in range(max(1, self._max_mem_size // 5)):
                    self._mem.popitem(last=False)
            self._mem[full] = True
            return True

    def release(self, key: str) -> None:
        full = self._key(key)
        if self.r is not None:
            try:
                self.r.delete(full)
            except redis.RedisError as exc:
                logger.warning("Redis release failed for %s: %s", key, exc)
        with self._lock:
            self._mem.pop(full, None)

    def seen(self, key: str) -> bool:
        full = self._key(key)
        if self.r is not None:
            try:
                return bool(self.r.exists(full))
            except redis.RedisError:
                pass
        with self._lock:
            return full in self._mem


def action_key(action: str, identity: str, trigger: Optional[str]) -> str:
    return f"{action}:{identity}:{trigger or '-'}"
