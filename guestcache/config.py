"""Configuration loader with type-safe dataclasses."""

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# App shell fetched on install. Must match the frontend build output,
# otherwise the install fails.
DEFAULT_PRECACHE = (
    "/",
    "/index.html",
    "/static/js/main.js",
    "/static/css/main.css",
    "/manifest.json",
    "/favicon.ico",
)

DEFAULT_API_ROUTES = ("/api/",)

DEFAULT_CACHE_PREFIX = "guest-mgr"

DEFAULT_OFFLINE_MESSAGE = "You are offline"


def compute_cache_version(precache: tuple[str, ...], api_routes: tuple[str, ...]) -> str:
    """Compute a cache version from the precache list and API routes.

    Changing the app shell or routing yields new bucket names, so the next
    activation drops the old buckets without a manual version bump.
    """
    content = "\n".join(precache) + "\n--\n" + "\n".join(api_routes)
    content_hash = hashlib.sha256(content.encode()).hexdigest()[:8]
    return f"1.0.{content_hash}"


def _require_http_url(value: str, what: str) -> None:
    if not value:
        raise ConfigError(f"{what} cannot be empty")
    if not value.startswith(("http://", "https://")):
        raise ConfigError(f"{what} must start with http:// or https://, got '{value}'")


@dataclass(frozen=True)
class WorkerConfig:
    """Configuration for the caching worker.

    Bucket names default to "<prefix>-static-v<version>" and
    "<prefix>-runtime-v<version>". When version is not set it is computed
    from the precache list (see compute_cache_version).
    """

    origin: str
    version: str | None = None
    cache_prefix: str = DEFAULT_CACHE_PREFIX
    static_cache: str | None = None
    runtime_cache: str | None = None
    precache: tuple[str, ...] = DEFAULT_PRECACHE
    api_routes: tuple[str, ...] = DEFAULT_API_ROUTES
    shell_url: str = "/"
    network_timeout: int = 10  # seconds
    offline_message: str = DEFAULT_OFFLINE_MESSAGE

    def __post_init__(self) -> None:
        _require_http_url(self.origin, "Worker origin")
        # Normalize: origin never carries a trailing slash or path
        object.__setattr__(self, "origin", self.origin.rstrip("/").lower())
        object.__setattr__(self, "precache", tuple(self.precache))
        object.__setattr__(self, "api_routes", tuple(self.api_routes))

        if not self.cache_prefix:
            raise ConfigError("Cache prefix cannot be empty")
        for path in self.precache:
            if not isinstance(path, str) or not path.startswith("/"):
                raise ConfigError(f"Precache entries must be absolute paths starting with '/', got {path!r}")
        for route in self.api_routes:
            if not isinstance(route, str) or not route.startswith("/"):
                raise ConfigError(f"API routes must start with '/', got {route!r}")
        if not self.shell_url.startswith("/"):
            raise ConfigError(f"Shell URL must start with '/', got '{self.shell_url}'")
        if self.network_timeout < 1:
            raise ConfigError(f"Network timeout must be at least 1 second (got {self.network_timeout})")
        if not self.offline_message:
            raise ConfigError("Offline message cannot be empty")

        if self.version is None:
            object.__setattr__(self, "version", compute_cache_version(self.precache, self.api_routes))
        if self.static_cache is None:
            object.__setattr__(self, "static_cache", f"{self.cache_prefix}-static-v{self.version}")
        if self.runtime_cache is None:
            object.__setattr__(self, "runtime_cache", f"{self.cache_prefix}-runtime-v{self.version}")
        if self.static_cache == self.runtime_cache:
            raise ConfigError(f"Static and runtime caches must have different names (got '{self.static_cache}')")

    @property
    def allowed_caches(self) -> frozenset[str]:
        """Bucket names that survive activation."""
        return frozenset({self.static_cache, self.runtime_cache})

    @property
    def shell_absolute_url(self) -> str:
        return self.origin + self.shell_url

    def absolute(self, path: str) -> str:
        """Resolve a same-origin path to an absolute URL."""
        if path.startswith(("http://", "https://")):
            return path
        return self.origin + path


@dataclass(frozen=True)
class UpstreamConfig:
    """The server that network fetches are sent to."""

    url: str

    def __post_init__(self) -> None:
        _require_http_url(self.url, "Upstream URL")
        object.__setattr__(self, "url", self.url.rstrip("/"))


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for the caching HTTP proxy."""

    enabled: bool = True
    port: int = 8080

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Proxy port must be between 1 and 65535, got {self.port}")


def _get_default_storage_path() -> str:
    """Return ~/.local/share/guestcache/caches.db (XDG user data directory)."""
    return str(Path.home() / ".local" / "share" / "guestcache" / "caches.db")


DEFAULT_STORAGE_PATH = _get_default_storage_path()


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the SQLite cache storage."""

    path: str = DEFAULT_STORAGE_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Storage path cannot be empty")
        object.__setattr__(self, "path", os.path.expanduser(self.path))


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    worker: WorkerConfig
    upstream: UpstreamConfig
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def _string_list(value: object, what: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ConfigError(f"'{what}' must be a list")
    return tuple(str(item) for item in value)


def _parse_worker_config(data: dict | None) -> WorkerConfig:
    """Parse worker configuration section."""
    if data is None:
        raise ConfigError("Configuration must contain a 'worker' section")
    if not isinstance(data, dict):
        raise ConfigError("'worker' section must be a dictionary")

    origin = data.get("origin")
    if origin is None:
        raise ConfigError("'worker' section is missing 'origin' field")

    version = data.get("version")
    static_cache = data.get("static_cache")
    runtime_cache = data.get("runtime_cache")

    return WorkerConfig(
        origin=str(origin),
        version=str(version) if version is not None else None,
        cache_prefix=str(data.get("cache_prefix", DEFAULT_CACHE_PREFIX)),
        static_cache=str(static_cache) if static_cache is not None else None,
        runtime_cache=str(runtime_cache) if runtime_cache is not None else None,
        precache=_string_list(data.get("precache", list(DEFAULT_PRECACHE)), "worker.precache"),
        api_routes=_string_list(data.get("api_routes", list(DEFAULT_API_ROUTES)), "worker.api_routes"),
        shell_url=str(data.get("shell_url", "/")),
        network_timeout=int(data.get("network_timeout", 10)),
        offline_message=str(data.get("offline_message", DEFAULT_OFFLINE_MESSAGE)),
    )


def _parse_upstream_config(data: dict | None) -> UpstreamConfig:
    """Parse upstream configuration section."""
    if data is None:
        raise ConfigError("Configuration must contain an 'upstream' section")
    if not isinstance(data, dict):
        raise ConfigError("'upstream' section must be a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError("'upstream' section is missing 'url' field")
    return UpstreamConfig(url=str(url))


def _parse_proxy_config(data: dict | None) -> ProxyConfig:
    """Parse proxy configuration section."""
    if data is None:
        return ProxyConfig()
    if not isinstance(data, dict):
        raise ConfigError("'proxy' section must be a dictionary")

    return ProxyConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
    )


def _parse_storage_config(data: dict | None) -> StorageConfig:
    """Parse storage configuration section."""
    if data is None:
        return StorageConfig()
    if not isinstance(data, dict):
        raise ConfigError("'storage' section must be a dictionary")

    return StorageConfig(path=str(data.get("path", DEFAULT_STORAGE_PATH)))


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - GUESTCACHE_ORIGIN: Override worker.origin
    - GUESTCACHE_CACHE_VERSION: Override worker.version
    - GUESTCACHE_NETWORK_TIMEOUT: Override worker.network_timeout
    - GUESTCACHE_UPSTREAM_URL: Override upstream.url
    - GUESTCACHE_PROXY_PORT: Override proxy.port
    - GUESTCACHE_PROXY_ENABLED: Override proxy.enabled (true/false)
    - GUESTCACHE_STORAGE_PATH: Override storage.path
    """
    for section in ("worker", "upstream", "proxy", "storage"):
        if config_data.get(section) is None:
            config_data[section] = {}

    origin = os.environ.get("GUESTCACHE_ORIGIN")
    if origin is not None:
        config_data["worker"]["origin"] = origin

    version = os.environ.get("GUESTCACHE_CACHE_VERSION")
    if version is not None:
        config_data["worker"]["version"] = version

    timeout = os.environ.get("GUESTCACHE_NETWORK_TIMEOUT")
    if timeout is not None:
        config_data["worker"]["network_timeout"] = int(timeout)

    upstream_url = os.environ.get("GUESTCACHE_UPSTREAM_URL")
    if upstream_url is not None:
        config_data["upstream"]["url"] = upstream_url

    proxy_port = os.environ.get("GUESTCACHE_PROXY_PORT")
    if proxy_port is not None:
        config_data["proxy"]["port"] = int(proxy_port)

    proxy_enabled = os.environ.get("GUESTCACHE_PROXY_ENABLED")
    if proxy_enabled is not None:
        config_data["proxy"]["enabled"] = proxy_enabled.lower() in ("true", "1", "yes")

    storage_path = os.environ.get("GUESTCACHE_STORAGE_PATH")
    if storage_path is not None:
        config_data["storage"]["path"] = storage_path

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid environment override: {e}")

    try:
        return Config(
            worker=_parse_worker_config(data["worker"] or None),
            upstream=_parse_upstream_config(data["upstream"] or None),
            proxy=_parse_proxy_config(data.get("proxy")),
            storage=_parse_storage_config(data.get("storage")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
