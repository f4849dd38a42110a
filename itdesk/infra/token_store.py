from __future__ import annotations

import os
from functools import lru_cache
from typing import Protocol

from redis import Redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
TOKEN_CACHE_KEY = os.getenv("ITDESK_TOKEN_CACHE_KEY", "auth_token")
TOKEN_STORE_BACKEND = os.getenv("ITDESK_TOKEN_STORE", "memory")


class TokenStore(Protocol):
    def get(self) -> str | None: ...

    def set(self, token: str) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    def __init__(self, token: str | None = None) -> None:
        self._token = token

    def get(self) -> str | None:
        return self._token

    def set(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False


class RedisTokenStore:
    """Keeps the last known bearer token under one key so it survives restarts."""

    def __init__(self, redis: Redis | None = None, *, key: str | None = None) -> None:
        self._redis = redis
        self._key = key or TOKEN_CACHE_KEY

    def _client(self) -> Redis:
        return self._redis if self._redis is not None else get_redis()

    def get(self) -> str | None:
        raw = self._client().get(self._key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return raw if isinstance(raw, str) and raw else None

    def set(self, token: str) -> None:
        self._client().set(self._key, token)

    def clear(self) -> None:
        self._client().delete(self._key)


def build_token_store(backend: str | None = None, *, key: str | None = None) -> TokenStore:
    selected = (backend or TOKEN_STORE_BACKEND).strip().lower()
    if selected == "redis":
        return RedisTokenStore(key=key)
    if selected == "memory":
        return MemoryTokenStore()
    raise ValueError(f"unknown token store backend: {selected}")
