"""Instance-owned TTL cache with stale fallback for registry reads.

Every cache belongs to the object that created it, so a fresh repository
means a fresh cache. When the registry is unreachable, point reads fall
back to the last-known-good value for that key.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, TypeVar

from cachetools import TTLCache  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

MISSING = object()

F = TypeVar("F", bound=Callable[..., Any])


class AsyncTTLCache:
    """Fresh TTL tier plus a bounded LRU stale tier.

    ``invalidate`` drops the fresh entry only; the stale copy survives so a
    later outage can still serve it. ``forget`` drops both.
    """

    def __init__(self, maxsize: int = 256, ttl: float = 60.0):
        self._maxsize = maxsize
        self._fresh: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._stale: OrderedDict[str, Any] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            if len(self._locks) > self._maxsize * 2:
                self._locks = {k: v for k, v in self._locks.items() if v.locked()}
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def get(self, key: str) -> Any:
        return self._fresh.get(key, MISSING)

    def set(self, key: str, value: Any) -> None:
        self._fresh[key] = value
        self._stale[key] = value
        self._stale.move_to_end(key)
        while len(self._stale) > self._maxsize:
            self._stale.popitem(last=False)

    def get_stale(self, key: str) -> Any:
        value = self._stale.get(key, MISSING)
        if value is not MISSING:
            self._stale.move_to_end(key)
        return value

    def invalidate(self, key: str) -> None:
        self._fresh.pop(key, None)

    def forget(self, key: str) -> None:
        self._fresh.pop(key, None)
        self._stale.pop(key, None)

    def clear(self) -> None:
        self._fresh.clear()

    @property
    def size(self) -> int:
        return len(self._fresh)


def cached(
    cache_attr: str,
    key_func: Callable[..., str],
    *,
    retry: int = 3,
    retry_delay: float = 1.0,
):
    """Cache an async method's result in ``getattr(self, cache_attr)``.

    On failure the call is retried *retry* times with linear backoff, then the
    stale tier is consulted; with no stale value the last error propagates.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            cache: AsyncTTLCache = getattr(self, cache_attr)
            key = key_func(*args, **kwargs)

            result = cache.get(key)
            if result is not MISSING:
                return result

            async with cache.lock_for(key):
                result = cache.get(key)
                if result is not MISSING:
                    return result

                last_exc: BaseException | None = None
                for attempt in range(1, retry + 1):
                    try:
                        result = await func(self, *args, **kwargs)
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        last_exc = exc
                        if attempt < retry:
                            delay = retry_delay * attempt
                            logger.warning(
                                "Registry read %d/%d failed for %s: %s, retrying in %.1fs",
                                attempt,
                                retry,
                                key,
                                type(exc).__name__,
                                delay,
                            )
                            await asyncio.sleep(delay)
                        continue
                    cache.set(key, result)
                    return result

                stale = cache.get_stale(key)
                if stale is not MISSING:
                    logger.warning("Serving stale registry data for %s (%s)", key, type(last_exc).__name__)
                    return stale
                raise last_exc  # type: ignore[misc]

        return wrapper  # type: ignore[return-value]

    return decorator
