"""Data models for intercepted requests and cached responses."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from requests.structures import CaseInsensitiveDict


class BodyUsedError(Exception):
    """Raised when a response body is read or cloned after being consumed."""

    pass


class WorkerState(Enum):
    """Lifecycle state of a service worker instance."""

    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class RequestKind(Enum):
    """How the fetch handler treats an intercepted request."""

    PASSTHROUGH = "passthrough"
    API = "api"
    STATIC = "static"


@dataclass(frozen=True)
class InterceptedRequest:
    """A single request seen by the fetch handler.

    Attributes:
        url: Absolute request URL.
        method: HTTP method, upper case.
        headers: Request headers.
        mode: Fetch mode ("navigate", "same-origin", "cors", "no-cors").
        destination: Fetch destination ("document", "script", "style", "image", ...).
        body: Request body for non-GET requests, or None.
    """

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    mode: str = "same-origin"
    destination: str = ""
    body: bytes | None = None

    @property
    def cache_key(self) -> tuple[str, str]:
        """Key used by cache buckets: method plus absolute URL."""
        return (self.method.upper(), self.url)

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def origin(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}".lower()

    @property
    def is_navigation(self) -> bool:
        """Whether this request loads a top-level document."""
        if self.mode == "navigate" or self.destination == "document":
            return True
        accept = next((v for k, v in self.headers.items() if k.lower() == "accept"), "")
        return self.method.upper() == "GET" and "text/html" in accept


class Response:
    """HTTP response with a single-read body.

    The body can be consumed exactly once (read/text/json, or storing it in a
    cache). Call clone() before handing the response to two consumers.
    """

    def __init__(
        self,
        body: bytes = b"",
        status: int = 200,
        status_text: str = "OK",
        headers: dict[str, str] | None = None,
        url: str = "",
        type: str = "default",
        redirected: bool = False,
    ) -> None:
        self._body = body
        self.status = status
        self.status_text = status_text
        self.headers: CaseInsensitiveDict = CaseInsensitiveDict(headers or {})
        self.url = url
        self.type = type
        self.redirected = redirected
        self.body_used = False

    def __repr__(self) -> str:
        return f"<Response [{self.status}] {self.url or '(synthetic)'}>"

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def read(self) -> bytes:
        """Consume and return the body."""
        if self.body_used:
            raise BodyUsedError(f"Body of {self!r} has already been consumed")
        self.body_used = True
        return self._body

    def text(self, encoding: str = "utf-8") -> str:
        return self.read().decode(encoding)

    def json(self) -> Any:
        return json.loads(self.read())

    def clone(self) -> "Response":
        """Return an independent copy; must be called before the body is consumed."""
        if self.body_used:
            raise BodyUsedError(f"Cannot clone {self!r}: body already consumed")
        return Response(
            body=self._body,
            status=self.status,
            status_text=self.status_text,
            headers=dict(self.headers),
            url=self.url,
            type=self.type,
            redirected=self.redirected,
        )
