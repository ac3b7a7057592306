"""Shared fixtures: an in-memory cache storage and a scriptable fake network."""

import threading
from collections.abc import Iterator

import pytest

from guestcache.classifier import is_same_origin
from guestcache.config import WorkerConfig
from guestcache.models import InterceptedRequest, Response
from guestcache.network import NetworkError
from guestcache.storage import CacheStorage, init_storage
from guestcache.worker import ServiceWorker

ORIGIN = "http://guests.test"


class FakeNetwork:
    """Stands in for guestcache.network.Network.

    Routes map absolute URLs to canned responses. When offline, every
    fetch raises NetworkError. Unknown URLs answer 404.
    """

    def __init__(self, origin: str = ORIGIN) -> None:
        self.origin = origin
        self.routes: dict[str, tuple[int, bytes, dict[str, str]]] = {}
        self.offline = False
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def add(self, path: str, body: bytes | str = b"", status: int = 200, headers: dict | None = None) -> None:
        url = path if path.startswith("http") else self.origin + path
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[url] = (status, body, dict(headers or {}))

    def fetch(self, request: InterceptedRequest) -> Response:
        with self._lock:
            self.calls.append((request.method, request.url))
        if self.offline:
            raise NetworkError(f"Offline: {request.url}")
        kind = "basic" if is_same_origin(request.url, self.origin) else "cors"
        route = self.routes.get(request.url)
        if route is None:
            return Response(b"Not Found", status=404, status_text="Not Found", url=request.url, type=kind)
        status, body, headers = route
        return Response(body, status=status, status_text="OK" if status == 200 else "", headers=headers,
                        url=request.url, type=kind)

    def count(self, url: str) -> int:
        url = url if url.startswith("http") else self.origin + url
        with self._lock:
            return sum(1 for _, called in self.calls if called == url)

    def close(self) -> None:
        pass


@pytest.fixture
def network() -> FakeNetwork:
    """Fake network serving the app shell and a health endpoint."""
    fake = FakeNetwork()
    fake.add("/", "<html>shell</html>", headers={"Content-Type": "text/html"})
    fake.add("/index.html", "<html>shell</html>", headers={"Content-Type": "text/html"})
    fake.add("/app.js", "console.log('app');", headers={"Content-Type": "application/javascript"})
    fake.add("/api/health", '{"status":"ok"}', headers={"Content-Type": "application/json"})
    return fake


@pytest.fixture
def storage() -> Iterator[CacheStorage]:
    """In-memory cache storage."""
    conn = init_storage(":memory:")
    yield CacheStorage(conn)
    conn.close()


@pytest.fixture
def worker_config() -> WorkerConfig:
    """Worker config with fixed bucket names and a three-entry precache."""
    return WorkerConfig(
        origin=ORIGIN,
        version="1",
        static_cache="static-v1",
        runtime_cache="runtime-v1",
        precache=("/", "/index.html", "/app.js"),
        api_routes=("/api/",),
    )


@pytest.fixture
def worker(worker_config: WorkerConfig, storage: CacheStorage, network: FakeNetwork) -> Iterator[ServiceWorker]:
    """Service worker bound to the fake network and in-memory storage."""
    sw = ServiceWorker(worker_config, storage, network)
    yield sw
    sw.close()


def make_request(path: str, **kwargs) -> InterceptedRequest:
    """Build a request for a path on the test origin."""
    url = path if path.startswith("http") else ORIGIN + path
    return InterceptedRequest(url=url, **kwargs)


@pytest.fixture
def req():
    """Factory fixture for InterceptedRequest on the test origin."""
    return make_request
