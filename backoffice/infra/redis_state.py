from __future__ import annotations

import os
from functools import lru_cache

from redis import Redis
from redis.lock import Lock

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
LOCK_KEY_PREFIX = "backoffice:lock:"


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def build_lock(name: str, *, timeout: float, blocking_timeout: float) -> Lock:
    return get_redis().lock(
        f"{LOCK_KEY_PREFIX}{name}",
        timeout=timeout,
        blocking_timeout=blocking_timeout,
    )


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False
