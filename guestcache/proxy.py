"""Caching HTTP proxy that runs the worker in front of the upstream server."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from .classifier import is_same_origin
from .config import ProxyConfig
from .models import InterceptedRequest, Response
from .network import HOP_BY_HOP_HEADERS, Network, NetworkError
from .registration import Registration

logger = logging.getLogger(__name__)

# Pages post lifecycle messages here, e.g. {"type": "SKIP_WAITING"}.
CONTROL_PATH = "/__worker/message"

# Maximum accepted request body (guest imports are the largest payloads).
MAX_BODY_BYTES = 10 * 1024 * 1024

# How long the control endpoint waits for a message to be handled.
MESSAGE_TIMEOUT_SECONDS = 30


class ProxyError(Exception):
    """Raised when the proxy server fails to start."""

    pass


class RequestBodyError(Exception):
    """Raised when a request body cannot be read; carries the reply status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class ProxyHandler(BaseHTTPRequestHandler):
    """Turns each HTTP request into a fetch event for the controlling worker."""

    # Class-level references set by factory
    registration: Registration | None = None
    network: Network | None = None
    origin: str = ""

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Proxy %s - %s", self.address_string(), format % args)

    def _send_response(self, response: Response) -> None:
        body = response.read()
        length = str(len(body))
        if self.command == "HEAD":
            # Upstream HEAD replies carry the length of the body they omit
            length = response.headers.get("Content-Length", length)
        self.send_response(response.status, response.status_text or None)
        for name, value in response.headers.items():
            if name.lower() in HOP_BY_HOP_HEADERS or name.lower() == "content-length":
                continue
            self.send_header(name, value)
        self.send_header("Content-Length", length)
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _send_json(self, code: int, data: dict[str, Any]) -> None:
        body = json.dumps(data).encode("utf-8")
        self._send_response(Response(body=body, status=code, status_text="", headers={"Content-Type": "application/json"}))

    def _send_error_json(self, code: int, message: str) -> None:
        self._send_json(code, {"error": message})

    def _read_body(self) -> bytes | None:
        raw_length = self.headers.get("Content-Length")
        try:
            length = int(raw_length or 0)
        except ValueError:
            length = -1
        if length < 0:
            raise RequestBodyError(400, f"Invalid Content-Length: {raw_length!r}")
        if length == 0:
            return None
        if length > MAX_BODY_BYTES:
            raise RequestBodyError(413, f"Request body too large ({length} bytes)")
        return self.rfile.read(length)

    def _build_request(self, body: bytes | None) -> InterceptedRequest:
        # Absolute-form targets keep their own origin; _handle refuses foreign ones
        if self.path.startswith(("http://", "https://")):
            url = self.path
        else:
            url = self.origin + self.path
        headers = {name: value for name, value in self.headers.items()}
        return InterceptedRequest(
            url=url,
            method=self.command,
            headers=headers,
            mode=self.headers.get("Sec-Fetch-Mode", "same-origin"),
            destination=self.headers.get("Sec-Fetch-Dest", ""),
            body=body,
        )

    def _client_id(self) -> str:
        return self.client_address[0]

    def _handle(self) -> None:
        try:
            body = self._read_body()
        except RequestBodyError as e:
            self._send_error_json(e.status, str(e))
            return

        request = self._build_request(body)
        if not is_same_origin(request.url, self.origin):
            logger.warning("Refused cross-origin target %s from %s", request.url, self._client_id())
            self._send_error_json(403, "Only the app origin is proxied")
            return
        client_id = self._client_id()
        controller = self.registration.clients.add(client_id, self.registration.active)

        response = None
        if controller is not None:
            try:
                response = controller.handle_fetch(request, client_id)
            except Exception as e:
                logger.exception("Worker failed to handle %s %s: %s", request.method, request.url, e)
                self._send_error_json(502, "Worker failed to respond")
                return

        if response is None:
            try:
                response = self.network.fetch(request)
            except NetworkError as e:
                logger.warning("Upstream unavailable for %s %s: %s", request.method, request.url, e)
                self._send_error_json(502, "Upstream unavailable")
                return

        self._send_response(response)

    def _handle_message(self) -> None:
        """Handle POST /__worker/message - deliver a control message."""
        try:
            body = self._read_body()
        except RequestBodyError as e:
            self._send_error_json(e.status, str(e))
            return
        try:
            data = json.loads(body or b"")
        except (ValueError, UnicodeDecodeError):
            self._send_error_json(400, "Message body must be JSON")
            return

        lifetime = self.registration.post_message(data, source=self._client_id())
        if lifetime is None:
            self._send_error_json(503, "No worker registered")
            return
        try:
            lifetime.result(timeout=MESSAGE_TIMEOUT_SECONDS)
        except Exception as e:
            logger.error("Message %r failed: %s", data, e)
            self._send_error_json(500, "Message handling failed")
            return
        self._send_json(200, {"delivered": True})

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._handle()

    def do_HEAD(self) -> None:
        self._handle()

    def do_POST(self) -> None:
        """Handle POST requests."""
        if self.path == CONTROL_PATH:
            self._handle_message()
        else:
            self._handle()

    def do_PUT(self) -> None:
        self._handle()

    def do_PATCH(self) -> None:
        self._handle()

    def do_DELETE(self) -> None:
        self._handle()


def _create_handler_class(registration: Registration, network: Network, origin: str) -> type:
    """Create a handler class with the registration and network bound."""

    class BoundProxyHandler(ProxyHandler):
        pass

    BoundProxyHandler.registration = registration
    BoundProxyHandler.network = network
    BoundProxyHandler.origin = origin.rstrip("/")
    return BoundProxyHandler


class ProxyServer:
    """Threaded HTTP proxy; one thread per request so fetch events run concurrently."""

    def __init__(
        self,
        config: ProxyConfig,
        registration: Registration,
        network: Network,
        origin: str,
    ) -> None:
        """Initialize the proxy server.

        Args:
            config: Proxy configuration.
            registration: Registration whose workers handle fetch events.
            network: Network used for requests the worker does not answer.
            origin: Origin the worker serves (scheme://host[:port]).
        """
        self.config = config
        self.registration = registration
        self.network = network
        self.origin = origin
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the proxy in a background thread.

        Raises:
            ProxyError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Proxy server is already running")
            return

        try:
            handler_class = _create_handler_class(self.registration, self.network, self.origin)
            self._server = ThreadingHTTPServer(("", self.config.port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="proxy-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("Proxy server started on port %d for %s", self.config.port, self.origin)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ProxyError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or guestcache is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ProxyError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            else:
                raise ProxyError(f"Failed to start proxy server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the proxy server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping proxy server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("Proxy server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
