"""
Content Adapters

The store hands out raw bytes. Turning a file into something a host can
use (a parsed JSON document, a text template, a route table) is up to
adapters chosen by file suffix:

    registry = AdapterRegistry.with_defaults()
    routes = registry.adapt("routes.json", files["routes.json"])

Third-party adapters are discovered via Python entry points
(importlib.metadata) in the ``apiver.adapters`` group. Each entry point
name is the suffix it handles (".yaml", ".toml", ...) and must resolve
to a callable with signature:

    (path: str, content: bytes) -> object

Nothing here executes the loaded content itself.
"""

import json
import logging
from collections.abc import Callable, Mapping
from importlib.metadata import entry_points
from pathlib import PurePosixPath

logger = logging.getLogger(__name__)

ADAPTER_GROUP = "apiver.adapters"

Adapter = Callable[[str, bytes], object]


def discover(group: str = ADAPTER_GROUP) -> dict:
    """Discover all entry points for a given group.

    Returns a dict mapping entry point names to loaded objects.
    Invalid entry points are logged and skipped.
    """
    plugins = {}
    eps = entry_points()

    # Python 3.12+ returns a SelectableGroups, 3.10-3.11 returns a dict
    if hasattr(eps, "select"):
        selected = eps.select(group=group)
    elif isinstance(eps, dict):
        selected = eps.get(group, ())  # type: ignore[arg-type]
    else:
        selected = ()

    for ep in selected:
        try:
            obj = ep.load()
            plugins[ep.name] = obj
            logger.debug("Loaded adapter %s:%s", group, ep.name)
        except Exception as e:
            logger.warning("Failed to load adapter %s:%s: %s", group, ep.name, e)

    return plugins


def text_adapter(path: str, content: bytes) -> str:
    return content.decode("utf-8")


def json_adapter(path: str, content: bytes) -> object:
    try:
        return json.loads(content.decode("utf-8"))
    except ValueError as e:
        raise ValueError(f"Invalid JSON in {path}: {e}") from e


DEFAULT_ADAPTERS = {
    ".json": json_adapter,
    ".txt": text_adapter,
    ".md": text_adapter,
}


class AdapterRegistry:
    """Maps file suffixes to adapters."""

    def __init__(self, adapters: Mapping[str, Adapter] | None = None, fallback: Adapter | None = None):
        self._adapters: dict[str, Adapter] = {}
        self.fallback = fallback
        for suffix, adapter in (adapters or {}).items():
            self.register(suffix, adapter)

    @classmethod
    def with_defaults(cls, discover_plugins: bool = False) -> "AdapterRegistry":
        registry = cls(DEFAULT_ADAPTERS)
        if discover_plugins:
            for suffix, adapter in discover(ADAPTER_GROUP).items():
                if not callable(adapter):
                    logger.warning("Adapter %s is not callable, skipping", suffix)
                    continue
                registry.register(suffix, adapter)
        return registry

    @staticmethod
    def _normalize(suffix: str) -> str:
        suffix = suffix.lower()
        return suffix if suffix.startswith(".") else f".{suffix}"

    def register(self, suffix: str, adapter: Adapter):
        self._adapters[self._normalize(suffix)] = adapter

    def suffixes(self) -> list[str]:
        return sorted(self._adapters)

    def adapter_for(self, path: str) -> Adapter | None:
        suffix = PurePosixPath(path).suffix
        if suffix:
            adapter = self._adapters.get(self._normalize(suffix))
            if adapter is not None:
                return adapter
        return self.fallback

    def adapt(self, path: str, content: bytes) -> object:
        """Run the matching adapter; raw bytes when nothing matches."""
        adapter = self.adapter_for(path)
        if adapter is None:
            return content
        return adapter(path, content)

    def adapt_all(self, files: Mapping[str, bytes]) -> dict[str, object]:
        return {path: self.adapt(path, content) for path, content in files.items()}
