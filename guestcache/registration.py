"""Worker registration: drives the install/activate lifecycle.

State machine per worker:

    parsed -> installing -> installed (waiting) -> activating -> activated
                  |                                                  |
                  +-> redundant (install failed)    redundant <------+ (superseded)

A new version installs next to the active one. It activates immediately
when it called skip_waiting() or when nothing is active yet; otherwise it
waits until a SKIP_WAITING message arrives.
"""

import logging
import threading
from concurrent.futures import Future
from typing import Any

from .models import WorkerState
from .worker import ActivateEvent, InstallEvent, MessageEvent, ServiceWorker

logger = logging.getLogger(__name__)

# Upper bound for install/activate work (precache of the app shell).
LIFECYCLE_TIMEOUT_SECONDS = 120


class Clients:
    """Pages known to the registration and the worker controlling each."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._controllers: dict[str, ServiceWorker | None] = {}

    def add(self, client_id: str, controller: ServiceWorker | None = None) -> ServiceWorker | None:
        """Register a client; an existing client keeps its controller."""
        with self._lock:
            if client_id not in self._controllers:
                self._controllers[client_id] = controller
            return self._controllers[client_id]

    def controller(self, client_id: str) -> ServiceWorker | None:
        with self._lock:
            return self._controllers.get(client_id)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._controllers)

    def claim(self, worker: ServiceWorker) -> None:
        """Make the worker the controller of every known client."""
        with self._lock:
            for client_id in self._controllers:
                self._controllers[client_id] = worker
            count = len(self._controllers)
        logger.info("[SW] v%s claimed %d client(s)", worker.config.version, count)


class Registration:
    """Holds the installing, waiting and active workers for one scope."""

    def __init__(self, scope: str, timeout: float = LIFECYCLE_TIMEOUT_SECONDS) -> None:
        self.scope = scope
        self.timeout = timeout
        self.installing: ServiceWorker | None = None
        self.waiting: ServiceWorker | None = None
        self.active: ServiceWorker | None = None
        self.clients = Clients()
        self._lock = threading.RLock()

    def update(self, worker: ServiceWorker) -> bool:
        """Install a new worker version and activate it when allowed.

        Returns:
            True if the worker installed (it may be waiting or active),
            False if the install failed and the worker became redundant.
        """
        with self._lock:
            worker.bind(self, self._handle_skip_waiting)
            self.installing = worker
            worker.state = WorkerState.INSTALLING

        try:
            worker.dispatch(InstallEvent()).result(timeout=self.timeout)
        except Exception as e:
            logger.error("[SW] Install of version %s failed: %s", worker.config.version, e)
            with self._lock:
                self.installing = None
                worker.state = WorkerState.REDUNDANT
            if self.active is not None:
                logger.info("[SW] Version %s keeps serving", self.active.config.version)
            return False

        with self._lock:
            self.installing = None
            if self.waiting is not None:
                self.waiting.state = WorkerState.REDUNDANT
            self.waiting = worker
            worker.state = WorkerState.INSTALLED
            activate_now = worker.skip_waiting_requested or self.active is None

        if activate_now:
            self._activate_waiting()
        else:
            logger.info("[SW] Version %s installed and waiting", worker.config.version)
        return True

    def _handle_skip_waiting(self, worker: ServiceWorker) -> None:
        # While installing, the flag alone is enough: update() checks it
        with self._lock:
            is_waiting = worker is self.waiting
        if is_waiting:
            self._activate_waiting()

    def _activate_waiting(self) -> None:
        with self._lock:
            worker = self.waiting
            if worker is None:
                return
            self.waiting = None
            previous = self.active
            self.active = worker
            if previous is not None:
                previous.state = WorkerState.REDUNDANT
            worker.state = WorkerState.ACTIVATING

        try:
            worker.dispatch(ActivateEvent()).result(timeout=self.timeout)
        except Exception as e:
            # An activate failure does not stop the worker from becoming active
            logger.error("[SW] Activate of version %s failed: %s", worker.config.version, e)
        worker.state = WorkerState.ACTIVATED

    def post_message(self, data: Any, source: str | None = None) -> Future | None:
        """Deliver a message to the waiting worker, or the active one.

        Returns:
            The message event's lifetime future, or None if no worker exists.
        """
        with self._lock:
            target = self.waiting or self.active
        if target is None:
            logger.debug("[SW] No worker to receive message %r", data)
            return None
        return target.dispatch(MessageEvent(data, source))

    def unregister(self) -> None:
        """Retire all workers of this registration."""
        with self._lock:
            workers = [w for w in (self.installing, self.waiting, self.active) if w is not None]
            self.installing = self.waiting = self.active = None
        for worker in workers:
            worker.state = WorkerState.REDUNDANT
            worker.close()
