"""
Version-selection middleware for WSGI applications.

Wraps a WSGI app so each request runs against one stored version:

    app = VersionMiddleware(inner_app, RuntimeLoader(store), ["v1", "v2"])

The version is detected from, in priority order (configurable):

    path     GET /v2/users           → "v2", PATH_INFO becomes /users
    header   X-API-Version: v2
    query    GET /users?version=v2

The selected version's files are placed in the environ as
``apiver.version`` and ``apiver.files`` for the inner app. A missing or
disallowed version is answered with 400, a version that fails to load
with 500, both as JSON bodies.
"""

import json
import logging
import re
from urllib.parse import parse_qs

from .errors import ApiverError
from .loader import RuntimeLoader

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = ("path", "header", "query")
DEFAULT_HEADER = "X-API-Version"
DEFAULT_QUERY_PARAM = "version"
DEFAULT_PATH_PATTERN = r"^v\d+(\.\d+)*$"

ENVIRON_VERSION = "apiver.version"
ENVIRON_FILES = "apiver.files"


def _header_key(header_name: str) -> str:
    return "HTTP_" + header_name.upper().replace("-", "_")


class VersionSelector:
    """Picks a version name out of a WSGI environ."""

    def __init__(
        self,
        priority=DEFAULT_PRIORITY,
        header_name: str = DEFAULT_HEADER,
        query_param: str = DEFAULT_QUERY_PARAM,
        path_pattern: str = DEFAULT_PATH_PATTERN,
        default_version: str | None = None,
    ):
        unknown = set(priority) - set(DEFAULT_PRIORITY)
        if unknown:
            raise ValueError(f"Unknown version sources: {', '.join(sorted(unknown))}")
        self.priority = tuple(priority)
        self.header_name = header_name
        self.query_param = query_param
        self.path_pattern = re.compile(path_pattern)
        self.default_version = default_version

    def from_path(self, environ) -> str | None:
        segments = environ.get("PATH_INFO", "").lstrip("/").split("/", 1)
        if segments[0] and self.path_pattern.match(segments[0]):
            return segments[0]
        return None

    def from_header(self, environ) -> str | None:
        return environ.get(_header_key(self.header_name)) or None

    def from_query(self, environ) -> str | None:
        params = parse_qs(environ.get("QUERY_STRING", ""))
        values = params.get(self.query_param)
        return values[0] if values else None

    def select(self, environ) -> tuple[str | None, str | None]:
        """Return (version, source); source is None when the default was used."""
        for source in self.priority:
            version = getattr(self, f"from_{source}")(environ)
            if version:
                return version, source
        return self.default_version, None


class VersionMiddleware:
    def __init__(self, app, loader: RuntimeLoader, allowed_versions, selector: VersionSelector | None = None):
        self.app = app
        self.loader = loader
        self.allowed_versions = list(allowed_versions)
        self.selector = selector or VersionSelector()

    @staticmethod
    def _send_json(start_response, status: str, data) -> list[bytes]:
        body = json.dumps(data, indent=2, default=str).encode("utf-8")
        start_response(status, [
            ("Content-Type", "application/json"),
            ("Content-Length", str(len(body))),
        ])
        return [body]

    def __call__(self, environ, start_response):
        version, source = self.selector.select(environ)

        if not version or version not in self.allowed_versions:
            return self._send_json(start_response, "400 Bad Request", {
                "error": "Invalid or missing API version",
                "allowed_versions": self.allowed_versions,
                "detected_version": version,
            })

        try:
            files = self.loader.load(version)
        except ApiverError as e:
            logger.error("Failed to load version %s: %s", version, e)
            return self._send_json(start_response, "500 Internal Server Error", {
                "error": f"Failed to load version {version}",
                "message": str(e),
            })

        environ[ENVIRON_VERSION] = version
        environ[ENVIRON_FILES] = files
        if source == "path":
            path = environ.get("PATH_INFO", "").lstrip("/")
            rest = path.split("/", 1)[1] if "/" in path else ""
            environ["SCRIPT_NAME"] = environ.get("SCRIPT_NAME", "").rstrip("/") + "/" + version
            environ["PATH_INFO"] = "/" + rest
        return self.app(environ, start_response)
