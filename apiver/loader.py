"""
Runtime Loader

Read-only access to resolved versions for a running host application:

    loader = RuntimeLoader(VersionStore.find("/srv/api"))
    files = loader.load("v2")            # {"routes/users.js": b"...", ...}
    both = loader.load(["v1", "v2"])     # {"v1": {...}, "v2": {...}}

Each version is resolved once (hotfixes included) and cached as an
immutable flat mapping of '/'-joined path → bytes. The loader never
imports or executes anything it loads; interpreting the content is the
host's job (see adapters.py).

The cache is an explicit object rather than module state, so tests and
hosts control its lifetime. It is guarded by a lock so one instance can
be shared by a threaded WSGI server.
"""

import logging
import threading
from collections.abc import Iterable, Mapping
from types import MappingProxyType

from .store import VersionStore
from .tree import flatten_tree

logger = logging.getLogger(__name__)


class VersionCache:
    """Thread-safe name → resolved-files cache."""

    def __init__(self):
        self._entries: dict[str, Mapping[str, bytes]] = {}
        self._lock = threading.Lock()

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, name: str) -> Mapping[str, bytes] | None:
        with self._lock:
            return self._entries.get(name)

    def put(self, name: str, files: Mapping[str, bytes]) -> Mapping[str, bytes]:
        """Store files under name unless another thread got there first."""
        with self._lock:
            return self._entries.setdefault(name, files)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()


class RuntimeLoader:
    def __init__(self, store: VersionStore, cache: VersionCache | None = None):
        self.store = store
        self.cache = cache if cache is not None else VersionCache()

    def _load_one(self, name: str) -> Mapping[str, bytes]:
        cached = self.cache.get(name)
        if cached is not None:
            return cached
        tree = self.store.resolve(name)
        files = MappingProxyType(dict(sorted(flatten_tree(tree).items())))
        logger.debug("Loaded %s (%d files)", name, len(files))
        return self.cache.put(name, files)

    def load(self, names: str | Iterable[str]):
        """
        Load one version, or several at once.

        With a single name, returns its read-only file mapping. With a
        list, every name is checked against the catalog before anything
        is resolved, so an unknown name fails the whole call and no
        partial result is returned.
        """
        if isinstance(names, str):
            cached = self.cache.get(names)
            if cached is not None:
                return cached
            self.store.entry(names)
            return self._load_one(names)

        names = list(names)
        if not names:
            return {}
        listing = self.store.list()
        for name in names:
            if name not in listing.versions:
                # Raises VersionNotFoundError
                self.store.entry(name)
        return {name: self._load_one(name) for name in names}

    def clear_cache(self):
        self.cache.clear()
