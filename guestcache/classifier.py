"""Request classification for the fetch handler."""

from urllib.parse import urlsplit

from .models import InterceptedRequest, RequestKind

_DESTINATION_TYPES = {
    "document": "document",
    "iframe": "document",
    "script": "script",
    "worker": "script",
    "style": "style",
    "image": "image",
    "font": "font",
    "manifest": "manifest",
}

_EXTENSION_TYPES = {
    ".html": "document",
    ".js": "script",
    ".mjs": "script",
    ".css": "style",
    ".png": "image",
    ".jpg": "image",
    ".jpeg": "image",
    ".gif": "image",
    ".svg": "image",
    ".ico": "image",
    ".webp": "image",
    ".woff": "font",
    ".woff2": "font",
    ".json": "manifest",
}


def is_same_origin(url: str, origin: str) -> bool:
    """Check whether an absolute URL belongs to the given origin.

    Default ports are normalized, so http://host and http://host:80 match.
    """
    parts = urlsplit(url)
    other = urlsplit(origin)
    if not parts.scheme or not parts.hostname:
        return False
    default_ports = {"http": 80, "https": 443}
    try:
        port = parts.port or default_ports.get(parts.scheme)
        other_port = other.port or default_ports.get(other.scheme)
    except ValueError:
        return False
    return (
        parts.scheme.lower() == other.scheme.lower()
        and parts.hostname.lower() == (other.hostname or "").lower()
        and port == other_port
    )


def is_api_route(path: str, api_routes: tuple[str, ...]) -> bool:
    return any(path.startswith(route) for route in api_routes)


def classify(request: InterceptedRequest, origin: str, api_routes: tuple[str, ...]) -> RequestKind:
    """Decide how the fetch handler treats a request.

    Non-GET and cross-origin requests are never intercepted. Same-origin GETs
    under an API route prefix are API calls; everything else, navigations
    included, is a static asset.
    """
    if request.method.upper() != "GET":
        return RequestKind.PASSTHROUGH
    if not is_same_origin(request.url, origin):
        return RequestKind.PASSTHROUGH
    if is_api_route(request.path, api_routes):
        return RequestKind.API
    return RequestKind.STATIC


def resource_type(request: InterceptedRequest, api_routes: tuple[str, ...]) -> str:
    """Best-effort resource type of a request, for logging."""
    if is_api_route(request.path, api_routes):
        return "api"
    if request.is_navigation:
        return "document"
    if request.destination in _DESTINATION_TYPES:
        return _DESTINATION_TYPES[request.destination]
    path = request.path.lower()
    for extension, kind in _EXTENSION_TYPES.items():
        if path.endswith(extension):
            return kind
    return "other"
