"""
Read-through response cache in front of MongoDB.

Keys:
    "<resource>:<id>"                 detail payloads
    "<resource>:<json of raw query>"  list payloads

Any write to a resource drops its detail key and every "<resource>:*" key.
A Redis outage never fails a request: reads fall through to the database
and failed invalidations are logged.
"""

import json
import logging
from typing import Any, Callable, Optional, Tuple

import redis
from fastapi import Request

from config import Settings

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"
SOURCE_DATABASE = "database"


def connect(settings: Settings) -> redis.Redis:
    client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    client.ping()
    return client


def detail_key(resource: str, resource_id: Any) -> str:
    return f"{resource}:{resource_id}"


def list_key(resource: str, request: Request) -> str:
    # Built from the raw query, so "?a=1&b=2" and "?b=2&a=1" are distinct entries.
    raw = dict(request.query_params)
    return f"{resource}:{json.dumps(raw, separators=(',', ':'))}"


class ResponseCache:
    def __init__(self, client: redis.Redis, ttl: int = 60):
        self.client = client
        self.ttl = ttl

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            logger.warning("Cache read failed for %s, serving from database: %s", key, exc)
            return None
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        try:
            self.client.setex(key, self.ttl, json.dumps(value))
        except redis.RedisError as exc:
            logger.warning("Cache store failed for %s: %s", key, exc)

    def fetch(self, key: str, loader: Callable[[], Any]) -> Tuple[Any, str]:
        """Return (payload, source) for `key`, loading and storing on a miss.

        A loader returning None (e.g. nothing found) is not cached.
        """
        cached = self.get(key)
        if cached is not None:
            return cached, SOURCE_CACHE
        value = loader()
        if value is not None:
            self.set(key, value)
        return value, SOURCE_DATABASE

    def invalidate(self, prefix: str, *keys: str) -> None:
        try:
            stale = list(keys)
            stale.extend(self.client.scan_iter(match=f"{prefix}:*", count=500))
            if stale:
                self.client.delete(*stale)
        except redis.RedisError as exc:
            logger.error("Cache invalidation failed for %s:*, stale entries may be served until expiry: %s",
                         prefix, exc)

    def ping(self) -> bool:
        return bool(self.client.ping())

    def close(self) -> None:
        self.client.close()


def get_cache(request: Request) -> ResponseCache:
    return request.app.state.cache
