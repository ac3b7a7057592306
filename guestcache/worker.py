"""Service worker: lifecycle events and fetch interception.

Every event handler may extend the event's lifetime with wait_until().
dispatch() returns the event's lifetime future, which settles only after
the handler returned and every extension settled. Callers that need work
to finish (precache, cache cleanup, cache writes) wait on that future
instead of firing and forgetting.
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from .classifier import classify, resource_type
from .config import WorkerConfig
from .models import InterceptedRequest, RequestKind, Response, WorkerState
from .network import Network, NetworkError
from .storage import CacheBucket, CacheStorage, CacheStorageError
from .strategies import StrategyContext, cache_first, network_first

logger = logging.getLogger(__name__)

# Threads for deferred work (precache, cleanup, cache writes).
MAX_WORKERS = 4

SKIP_WAITING = "SKIP_WAITING"
CACHE_URLS = "CACHE_URLS"


class WorkerError(Exception):
    """Raised when a worker operation fails."""

    pass


class InvalidStateError(WorkerError):
    """Raised when an event API is used outside its allowed window."""

    pass


class PrecacheError(WorkerError):
    """Raised when the app shell cannot be precached during install."""

    pass


def _holds_all(bucket: CacheBucket, requests: list[InterceptedRequest]) -> bool:
    cached = set(bucket.keys())
    return all(request.cache_key in cached for request in requests)


class ExtendableEvent:
    """Base class for events whose lifetime can be extended."""

    type = ""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._dispatching = True
        self._pending = 0
        self._settled = False
        self._errors: list[BaseException] = []
        self.lifetime: Future = Future()

    def wait_until(self, future: Future) -> None:
        """Keep the event alive until the future settles.

        Allowed while the handler runs or while other extensions are
        still pending. A failed extension fails the lifetime future.

        Raises:
            InvalidStateError: If the event has already settled.
        """
        with self._lock:
            if self._settled or (not self._dispatching and self._pending == 0):
                raise InvalidStateError(f"wait_until() called after the {self.type} event settled")
            self._pending += 1
        future.add_done_callback(self._extension_done)

    def _extension_done(self, future: Future) -> None:
        error = None if future.cancelled() else future.exception()
        with self._lock:
            if error is not None:
                self._errors.append(error)
            self._pending -= 1
        self._maybe_settle()

    def _finish_dispatch(self, error: BaseException | None = None) -> None:
        with self._lock:
            if error is not None:
                self._errors.append(error)
            self._dispatching = False
        self._maybe_settle()

    def _maybe_settle(self) -> None:
        with self._lock:
            if self._settled or self._dispatching or self._pending:
                return
            self._settled = True
            errors = list(self._errors)
        if errors:
            self.lifetime.set_exception(errors[0])
        else:
            self.lifetime.set_result(self)


class InstallEvent(ExtendableEvent):
    type = "install"


class ActivateEvent(ExtendableEvent):
    type = "activate"


class FetchEvent(ExtendableEvent):
    """A request intercepted by the worker.

    The handler answers with respond_with(); if it never does, the request
    goes to the network untouched.
    """

    type = "fetch"

    def __init__(self, request: InterceptedRequest, client_id: str | None = None) -> None:
        super().__init__()
        self.request = request
        self.client_id = client_id
        self.response: Future | None = None

    @property
    def responded(self) -> bool:
        return self.response is not None

    def respond_with(self, response: "Response | Future") -> None:
        """Answer the request with a response or a future of one.

        Raises:
            InvalidStateError: If called twice or after dispatch finished.
        """
        if self.response is not None:
            raise InvalidStateError("respond_with() has already been called")
        if not isinstance(response, Future):
            done: Future = Future()
            done.set_result(response)
            response = done
        self.response = response
        self.wait_until(response)


class MessageEvent(ExtendableEvent):
    """A control message posted by a page."""

    type = "message"

    def __init__(self, data: Any, source: str | None = None) -> None:
        super().__init__()
        self.data = data
        self.source = source


class ServiceWorker:
    """One version of the caching worker.

    Handlers are looked up in a table keyed by event type. State is owned
    by the Registration driving the lifecycle.
    """

    def __init__(
        self,
        config: WorkerConfig,
        storage: CacheStorage,
        network: Network,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.network = network
        self._executor = executor or ThreadPoolExecutor(max_workers=MAX_WORKERS, thread_name_prefix="sw")
        self._owns_executor = executor is None
        self._state = WorkerState.PARSED
        self._skip_waiting = False
        self._registration = None
        self._on_skip_waiting: Callable[["ServiceWorker"], None] | None = None
        self._handlers: dict[str, Callable[[Any], None]] = {
            InstallEvent.type: self._on_install,
            ActivateEvent.type: self._on_activate,
            FetchEvent.type: self._on_fetch,
            MessageEvent.type: self._on_message,
        }

    def __repr__(self) -> str:
        return f"<ServiceWorker v{self.config.version} {self._state.value}>"

    @property
    def state(self) -> WorkerState:
        return self._state

    @state.setter
    def state(self, new_state: WorkerState) -> None:
        if new_state is not self._state:
            logger.info("[SW] v%s: %s -> %s", self.config.version, self._state.value, new_state.value)
        self._state = new_state

    @property
    def skip_waiting_requested(self) -> bool:
        return self._skip_waiting

    def bind(self, registration: Any, on_skip_waiting: Callable[["ServiceWorker"], None] | None = None) -> None:
        """Attach the worker to the registration that drives its lifecycle."""
        self._registration = registration
        self._on_skip_waiting = on_skip_waiting

    def skip_waiting(self) -> None:
        """Ask to be activated without waiting for open clients to go away."""
        self._skip_waiting = True
        if self._on_skip_waiting is not None:
            self._on_skip_waiting(self)

    def dispatch(self, event: ExtendableEvent) -> Future:
        """Run the handler for an event and return its lifetime future.

        Raises:
            WorkerError: If the worker has no handler for this event type.
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            raise WorkerError(f"No handler for '{event.type}' events")
        try:
            handler(event)
        except Exception as e:
            logger.exception("[SW] %s handler failed: %s", event.type, e)
            event._finish_dispatch(e)
        else:
            event._finish_dispatch()
        return event.lifetime

    def handle_fetch(
        self,
        request: InterceptedRequest,
        client_id: str | None = None,
        timeout: float | None = None,
    ) -> Response | None:
        """Dispatch a fetch event and return the response, or None for passthrough."""
        event = FetchEvent(request, client_id)
        self.dispatch(event)
        if event.response is None:
            return None
        return event.response.result(timeout=timeout)

    def post_message(self, data: Any, source: str | None = None) -> Future:
        return self.dispatch(MessageEvent(data, source))

    def close(self) -> None:
        """Wait for deferred work and release the thread pool."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def _defer(self, event: ExtendableEvent, work: Callable[[], Any]) -> Future:
        future = self._executor.submit(work)
        event.wait_until(future)
        return future

    def _on_install(self, event: InstallEvent) -> None:
        logger.info("[SW] Installing version %s", self.config.version)
        self._defer(event, self._precache)

    def _precache(self) -> None:
        requests = [InterceptedRequest(url=self.config.absolute(path)) for path in self.config.precache]
        try:
            bucket = self.storage.open(self.config.static_cache)
            try:
                bucket.add_all(requests, self.network.fetch)
            except NetworkError as e:
                # A complete shell from an earlier run can still be served
                if not _holds_all(bucket, requests):
                    raise
                logger.warning("[SW] Network unavailable, reusing cached app shell in %s: %s", bucket.name, e)
        except (NetworkError, CacheStorageError) as e:
            logger.error("[SW] Precache failed, discarding version %s: %s", self.config.version, e)
            raise PrecacheError(f"Failed to precache app shell: {e}") from e
        logger.info("[SW] Cached %d static assets in %s", len(requests), self.config.static_cache)
        self.skip_waiting()

    def _on_activate(self, event: ActivateEvent) -> None:
        logger.info("[SW] Activating version %s", self.config.version)
        self._defer(event, self._cleanup_and_claim)

    def _cleanup_and_claim(self) -> None:
        allowed = self.config.allowed_caches
        for name in self.storage.keys():
            if name not in allowed:
                logger.info("[SW] Deleting old cache: %s", name)
                self.storage.delete(name)
        if self._registration is not None:
            self._registration.clients.claim(self)
        else:
            logger.debug("[SW] No registration bound, nothing to claim")

    def _on_fetch(self, event: FetchEvent) -> None:
        request = event.request
        kind = classify(request, self.config.origin, self.config.api_routes)
        if kind is RequestKind.PASSTHROUGH:
            return

        logger.debug(
            "[SW] Fetch %s (%s, %s)",
            request.path,
            kind.value,
            resource_type(request, self.config.api_routes),
        )
        ctx = StrategyContext(
            config=self.config,
            storage=self.storage,
            fetch=self.network.fetch,
            defer=lambda work: self._defer(event, work),
        )
        strategy = network_first if kind is RequestKind.API else cache_first
        # Strategies run on the calling thread; only cache writes go to the pool
        event.respond_with(strategy(request, ctx))

    def _on_message(self, event: MessageEvent) -> None:
        data = event.data
        if not isinstance(data, dict):
            logger.debug("[SW] Ignoring non-object message: %r", data)
            return

        message_type = data.get("type")
        if message_type == SKIP_WAITING:
            self.skip_waiting()
        elif message_type == CACHE_URLS:
            urls = data.get("payload")
            if isinstance(urls, list) and urls:
                logger.info("[SW] Caching additional URLs: %s", urls)
                requests = [InterceptedRequest(url=self.config.absolute(str(url))) for url in urls]
                bucket = self.storage.open(self.config.static_cache)
                self._defer(event, lambda: bucket.add_all(requests, self.network.fetch))
        else:
            logger.debug("[SW] Ignoring message of type %r", message_type)
