"""
apiver: versioned snapshots of an API source tree

Keeps many versions of one project directory without duplicating it:
one encrypted full snapshot per lineage root, encrypted incremental
patches for every derived version, and out-of-band hotfixes, all
reconstructible on demand and loadable at runtime by a host server.
"""

__version__ = "1.0.0"

__all__ = [
    # Store
    "VersionStore",
    "CommitResult",
    "FileDiff",
    "VersionListing",
    "CleanupReport",
    # Runtime
    "RuntimeLoader",
    "VersionCache",
    "VersionMiddleware",
    "VersionSelector",
    "AdapterRegistry",
    # Building blocks
    "Envelope",
    "Patch",
    "StoreConfig",
    # Errors
    "ApiverError",
]


# Lazy imports: only resolve when accessed
def __getattr__(name):
    if name in ("VersionStore", "CommitResult", "FileDiff", "VersionListing", "CleanupReport"):
        from . import store

        return getattr(store, name)
    if name in ("RuntimeLoader", "VersionCache"):
        from .loader import RuntimeLoader, VersionCache

        return RuntimeLoader if name == "RuntimeLoader" else VersionCache
    if name in ("VersionMiddleware", "VersionSelector"):
        from .middleware import VersionMiddleware, VersionSelector

        return VersionMiddleware if name == "VersionMiddleware" else VersionSelector
    if name == "AdapterRegistry":
        from .adapters import AdapterRegistry

        return AdapterRegistry
    if name == "Envelope":
        from .envelope import Envelope

        return Envelope
    if name == "Patch":
        from .patch import Patch

        return Patch
    if name == "StoreConfig":
        from .config import StoreConfig

        return StoreConfig
    if name == "ApiverError":
        from .errors import ApiverError

        return ApiverError
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
