"""
Loader orchestration on top of DataCache.

Provides:
- preload_data: fill missing keys by running their loaders concurrently
- smart_refresh: reload keys that are missing or older than a freshness window
- cached_loader: decorator serving a loader's result from the cache
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, TypeVar, Union

from .exceptions import LoaderError

if TYPE_CHECKING:
    from .cache import DataCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

Loader = Callable[[], Union[Awaitable[Any], Any]]


@dataclass(frozen=True)
class PreloadResult:
    key: str
    success: bool
    error: Exception | None = None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise LoaderError(self.key, self.error) from self.error


@dataclass(frozen=True)
class RefreshResult:
    key: str
    refreshed: bool
    error: Exception | None = None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise LoaderError(self.key, self.error) from self.error


async def _invoke(loader: Loader) -> Any:
    """Call a loader; coroutine functions and plain callables are both accepted."""
    result = loader()
    if inspect.isawaitable(result):
        result = await result
    return result


async def preload_data(
    cache: DataCache, loaders: Mapping[str, Loader], ttl: float | None = None
) -> list[PreloadResult]:
    """
    Run the loader of every key the cache does not hold, concurrently.

    Keys already cached are skipped and not reported. A failing loader is
    recorded in its result and never affects its siblings.

    Example:
        results = await preload_data(cache, {
            "dashboard-data": api.fetch_dashboard,
            "geospatial-data": api.fetch_geospatial,
        })
    """

    async def load(key: str, loader: Loader) -> PreloadResult:
        try:
            data = await _invoke(loader)
        except Exception as e:
            logger.warning(f"Failed to preload {key}: {e}")
            return PreloadResult(key=key, success=False, error=e)
        cache.set(key, data, ttl)
        logger.debug(f"Preloaded {key}")
        return PreloadResult(key=key, success=True)

    pending = [load(key, loader) for key, loader in loaders.items() if not cache.has(key)]
    if not pending:
        return []
    return list(await asyncio.gather(*pending))


async def smart_refresh(
    cache: DataCache,
    loaders: Mapping[str, Loader],
    staleness_threshold: float,
    ttl: float | None = None,
) -> list[RefreshResult]:
    """
    Reload keys that are missing or older than staleness_threshold seconds.

    Staleness is measured from the entry's creation and is independent of its
    TTL. Returns one result per loader key, in the order of `loaders`.
    """
    results: dict[str, RefreshResult] = {}
    stale: dict[str, Loader] = {}

    for key, loader in loaders.items():
        cached = cache.get(key, update_access=False)
        if cached is None or cached.age > staleness_threshold:
            stale[key] = loader
        else:
            results[key] = RefreshResult(key=key, refreshed=False)

    async def refresh(key: str, loader: Loader) -> RefreshResult:
        try:
            data = await _invoke(loader)
        except Exception as e:
            logger.warning(f"Failed to refresh {key}: {e}")
            return RefreshResult(key=key, refreshed=False, error=e)
        # last writer wins against concurrent set() calls for the same key
        cache.set(key, data, ttl)
        logger.debug(f"Refreshed {key}")
        return RefreshResult(key=key, refreshed=True)

    for result in await asyncio.gather(
        *(refresh(key, loader) for key, loader in stale.items())
    ):
        results[result.key] = result

    return [results[key] for key in loaders]


def _format_key(
    key: str | Callable[..., str],
    signature: inspect.Signature,
    args: tuple,
    kwargs: dict,
) -> str:
    if callable(key):
        return key(*args, **kwargs)
    if "{" not in key:
        return key
    # positional and named fields both resolve, however the loader was called
    bound = signature.bind(*args, **kwargs)
    bound.apply_defaults()
    return key.format(*bound.args, **bound.arguments)


def cached_loader(
    cache: DataCache, key: str | Callable[..., str], ttl: float | None = None
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Serve a loader's result from the cache, calling it only on a miss.

    Args:
        cache: DataCache holding the results
        key: Cache key template or generator function. Templates are
            formatted with the loader's bound arguments, so "report:{}" and
            "report:{region}" both work for positional and keyword calls.
        ttl: TTL in seconds (defaults to the cache's default_ttl)

    Example:
        @cached_loader(cache, "od_matrix:{}", ttl=600)
        async def load_od_matrix(region):
            return await api.get(f"/od-matrix/{region}")
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        signature = inspect.signature(func)

        if inspect.iscoroutinefunction(func):

            async def async_wrapper(*args, **kwargs):
                cache_key = _format_key(key, signature, args, kwargs)
                hit = cache.get(cache_key)
                if hit is not None:
                    return hit.data
                result = await func(*args, **kwargs)
                cache.set(cache_key, result, ttl)
                return result

            wrapper = async_wrapper
        else:

            def sync_wrapper(*args, **kwargs):
                cache_key = _format_key(key, signature, args, kwargs)
                hit = cache.get(cache_key)
                if hit is not None:
                    return hit.data
                result = func(*args, **kwargs)
                cache.set(cache_key, result, ttl)
                return result

            wrapper = sync_wrapper

        wrapper.__wrapped__ = func  # type: ignore
        wrapper.__name__ = func.__name__  # type: ignore
        wrapper.__doc__ = func.__doc__  # type: ignore
        wrapper._cache = cache  # type: ignore
        return wrapper  # type: ignore

    return decorator
