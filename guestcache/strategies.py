"""Caching strategies applied to intercepted requests.

- API requests: network-first, cache fallback, then a 503 JSON payload
- Static assets: cache-first, network fallback, then the cached app shell
  for navigations or a 503 text response
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from .config import WorkerConfig
from .models import InterceptedRequest, Response
from .network import NetworkError
from .storage import CacheStorage, CacheStorageError

logger = logging.getLogger(__name__)

OFFLINE_TEXT = "Network error occurred. Please check your connection."


@dataclass(frozen=True)
class StrategyContext:
    """What a strategy needs to serve one request.

    Attributes:
        config: Worker configuration (bucket names, shell URL, messages).
        storage: Cache storage shared by all events.
        fetch: Network fetch; raises NetworkError when offline.
        defer: Runs a callable in the background while keeping the
            current event alive until it finishes.
    """

    config: WorkerConfig
    storage: CacheStorage
    fetch: Callable[[InterceptedRequest], Response]
    defer: Callable[[Callable[[], None]], None]


def is_cacheable(response: Response) -> bool:
    """Only same-origin, non-redirected 200 responses are cached."""
    return response.type == "basic" and response.status == 200 and not response.redirected


def offline_json_response(message: str) -> Response:
    """Synthesized reply for API calls with neither network nor cache."""
    body = json.dumps({"error": message}).encode("utf-8")
    return Response(
        body=body,
        status=503,
        status_text="Service Unavailable",
        headers={"Content-Type": "application/json"},
    )


def offline_text_response() -> Response:
    return Response(
        body=OFFLINE_TEXT.encode("utf-8"),
        status=503,
        status_text="Service Unavailable",
        headers={"Content-Type": "text/plain"},
    )


def _mark_from_cache(response: Response) -> Response:
    response.headers["X-From-Cache"] = "true"
    return response


def _cache_match(ctx: StrategyContext, request: InterceptedRequest) -> Response | None:
    try:
        return ctx.storage.match(request)
    except CacheStorageError as e:
        logger.warning("Cache read failed for %s, using network only: %s", request.url, e)
        return None


def _store(ctx: StrategyContext, request: InterceptedRequest, response: Response) -> None:
    try:
        ctx.storage.bucket(ctx.config.runtime_cache).put(request, response)
        logger.debug("Cached %s in %s", request.url, ctx.config.runtime_cache)
    except CacheStorageError as e:
        logger.warning("Cache write failed for %s: %s", request.url, e)


def _store_copy(
    ctx: StrategyContext, request: InterceptedRequest, response: Response, extra_headers: dict[str, str] | None = None
) -> None:
    # Clone now, before the caller hands the original body to the client
    copy = response.clone()
    for name, value in (extra_headers or {}).items():
        copy.headers[name] = value
    ctx.defer(lambda: _store(ctx, request, copy))


def network_first(request: InterceptedRequest, ctx: StrategyContext) -> Response:
    """Serve from the network, falling back to the cache when offline."""
    try:
        response = ctx.fetch(request)
    except NetworkError as e:
        logger.info("Network request failed, trying cache: %s", e)
        cached = _cache_match(ctx, request)
        if cached is not None:
            logger.info("Serving from cache: %s", request.url)
            return _mark_from_cache(cached)
        logger.info("No cached copy of %s, returning offline response", request.url)
        return offline_json_response(ctx.config.offline_message)

    if is_cacheable(response):
        cache_date = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        _store_copy(ctx, request, response, {"X-Cache-Date": cache_date})
    return response


def cache_first(request: InterceptedRequest, ctx: StrategyContext) -> Response:
    """Serve from the cache, falling back to the network, then to the app shell."""
    cached = _cache_match(ctx, request)
    if cached is not None:
        return cached

    try:
        response = ctx.fetch(request)
    except NetworkError as e:
        logger.info("Failed to fetch %s from network: %s", request.url, e)
        if request.is_navigation:
            shell_request = InterceptedRequest(url=ctx.config.shell_absolute_url)
            shell = _cache_match(ctx, shell_request)
            if shell is not None:
                logger.info("Serving cached app shell for %s", request.url)
                return shell
        return offline_text_response()

    if is_cacheable(response):
        _store_copy(ctx, request, response)
    return response
