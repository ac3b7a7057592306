"""guestcache - Offline caching layer for the guest-list app."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - install the worker and start the proxy."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("guestcache %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .config import ConfigError, load_config
    from .network import Network
    from .proxy import ProxyError, ProxyServer
    from .registration import Registration
    from .storage import CacheStorage, CacheStorageError, init_storage
    from .worker import ServiceWorker

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
        logger.info(
            "Serving %s from %s (cache version %s)",
            config.worker.origin,
            config.upstream.url,
            config.worker.version,
        )
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Open cache storage
    try:
        conn = init_storage(config.storage.path)
        logger.info("Cache storage opened at %s", config.storage.path)
    except CacheStorageError as e:
        logger.error("Cache storage error: %s", e)
        sys.exit(1)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Install and activate the worker
    storage = CacheStorage(conn)
    network = Network(config.worker.origin, config.upstream.url, timeout=config.worker.network_timeout)
    registration = Registration(scope=config.worker.origin + "/")
    worker = ServiceWorker(config.worker, storage, network)
    if not registration.update(worker):
        logger.warning("Worker install failed, requests go straight to the network")

    proxy: Optional[ProxyServer] = None

    try:
        if config.proxy.enabled:
            try:
                proxy = ProxyServer(config.proxy, registration, network, config.worker.origin)
                proxy.start()
            except ProxyError as e:
                logger.error("Failed to start proxy server: %s", e)
                sys.exit(1)
        else:
            logger.warning("Proxy disabled, only the cache lifecycle ran")

        logger.info("All components started, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup - stop all components
        logger.info("Shutting down components...")

        if proxy is not None:
            proxy.stop()

        registration.unregister()
        network.close()
        conn.close()
        logger.info("Cache storage closed")

        logger.info("Shutdown complete")


def _open_storage_from_config(config_path: str):
    """Load config and open its cache storage, exiting with a message on error."""
    from pathlib import Path

    from .config import ConfigError, load_config
    from .storage import CacheStorage, CacheStorageError, init_storage

    try:
        config = load_config(config_path)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not Path(config.storage.path).exists():
        print(f"Error: Cache storage not found at {config.storage.path}")
        sys.exit(1)

    try:
        conn = init_storage(config.storage.path)
    except CacheStorageError as e:
        print(f"Error: {e}")
        sys.exit(1)

    return config, conn, CacheStorage(conn)


def _cmd_caches(args: argparse.Namespace) -> None:
    """Execute the caches command - list cache buckets and their entries."""
    from .storage import CacheStorageError

    config, conn, storage = _open_storage_from_config(args.config)
    try:
        names = storage.keys()
        if not names:
            print("No caches.")
            return
        allowed = config.worker.allowed_caches
        for name in names:
            marker = "current" if name in allowed else "stale"
            print(f"{name} ({marker}): {len(storage.open(name))} entries")
            if args.entries:
                for method, url in storage.open(name).keys():
                    print(f"  {method} {url}")
    except CacheStorageError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()


def _cmd_clear(args: argparse.Namespace) -> None:
    """Execute the clear command - delete one cache bucket or all of them."""
    from .storage import CacheStorageError

    _, conn, storage = _open_storage_from_config(args.config)
    try:
        if args.name:
            if storage.delete(args.name):
                print(f"Deleted cache {args.name}.")
            else:
                print(f"Error: No cache named {args.name}")
                sys.exit(1)
        else:
            names = storage.keys()
            for name in names:
                storage.delete(name)
            print(f"Deleted {len(names)} cache(s).")
    except CacheStorageError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()


def main() -> None:
    """Main entry point for the guestcache package."""
    parser = argparse.ArgumentParser(
        description="guestcache - Offline caching proxy for the guest-list app"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"guestcache {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Install the worker and start the caching proxy (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Caches subcommand
    caches_parser = subparsers.add_parser(
        "caches",
        help="List cache buckets",
    )
    caches_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    caches_parser.add_argument(
        "--entries",
        action="store_true",
        help="Also list the cached requests in each bucket",
    )
    caches_parser.set_defaults(func=_cmd_caches)

    # Clear subcommand
    clear_parser = subparsers.add_parser(
        "clear",
        help="Delete cache buckets",
    )
    clear_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    clear_parser.add_argument(
        "--name",
        help="Delete only this bucket (default: delete all)",
    )
    clear_parser.set_defaults(func=_cmd_clear)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
