"""Network access for the worker, backed by a requests session."""

import logging
from urllib.parse import urlsplit

import requests

from .classifier import is_same_origin
from .models import InterceptedRequest, Response

logger = logging.getLogger(__name__)

USER_AGENT = "guestcache/0.1"

# Headers that describe a single connection and must not be forwarded.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# requests decodes the body, so these no longer describe what we hold.
_DECODED_BODY_HEADERS = frozenset({"content-encoding", "content-length"})


class NetworkError(Exception):
    """Raised when a request cannot be completed (offline, timeout, refused)."""

    pass


class Network:
    """Performs the fetches the worker would send to the network.

    Same-origin URLs are sent to the upstream server: the origin part of the
    URL is replaced by the upstream base URL, path and query are kept.
    Any HTTP status counts as a completed fetch; only transport failures
    raise NetworkError.
    """

    def __init__(
        self,
        origin: str,
        upstream: str,
        timeout: int = 10,
        session: requests.Session | None = None,
    ) -> None:
        self.origin = origin.rstrip("/")
        self.upstream = upstream.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = USER_AGENT

    def resolve(self, url: str) -> str:
        """Map a request URL to the URL actually sent over the network."""
        if not is_same_origin(url, self.origin):
            return url
        parts = urlsplit(url)
        target = self.upstream + (parts.path or "/")
        if parts.query:
            target += "?" + parts.query
        return target

    def fetch(self, request: InterceptedRequest) -> Response:
        """Send the request and return the response with its body loaded.

        Raises:
            NetworkError: On connection failure or timeout.
        """
        target = self.resolve(request.url)
        headers = {
            name: value
            for name, value in request.headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() != "host"
        }
        try:
            resp = self._session.request(
                request.method,
                target,
                headers=headers,
                data=request.body,
                timeout=self.timeout,
                allow_redirects=True,
            )
        except requests.Timeout as e:
            raise NetworkError(f"Timed out fetching {request.url}: {e}")
        except requests.RequestException as e:
            raise NetworkError(f"Failed to fetch {request.url}: {e}")

        # A HEAD reply has no body to decode, so its length still describes the resource
        dropped = HOP_BY_HOP_HEADERS
        if request.method.upper() != "HEAD":
            dropped = dropped | _DECODED_BODY_HEADERS
        response_headers = {name: value for name, value in resp.headers.items() if name.lower() not in dropped}
        same_origin = is_same_origin(request.url, self.origin)
        logger.debug("%s %s -> %d", request.method, target, resp.status_code)
        return Response(
            body=resp.content,
            status=resp.status_code,
            status_text=resp.reason or "",
            headers=response_headers,
            url=request.url,
            type="basic" if same_origin else "cors",
            redirected=bool(resp.history),
        )

    def close(self) -> None:
        self._session.close()
