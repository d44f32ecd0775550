"""
Error Taxonomy

Every failure the store can report is a subclass of ApiverError, which
itself derives from ValueError so callers that only care about "bad
input or bad state" can catch one thing. Each error carries the version
name, file path or artifact id it concerns, so a CLI or host application
can report it without digging into internals.

Recoverable conditions (a patch or hotfix artifact missing from a chain,
a hotfix with no content change) are NOT errors. They are logged by the
module that encounters them.
"""


class ApiverError(ValueError):
    """Base class for all store errors."""


# ── Crypto ────────────────────────────────────────────────────────


class CryptoError(ApiverError):
    """Raised when an artifact cannot be sealed or opened."""


class ConfigurationError(CryptoError):
    """Raised when the secret or the store configuration is missing or invalid."""


class CorruptArtifactError(CryptoError):
    """Raised when decryption or decompression of a stored artifact fails."""

    def __init__(self, message: str, artifact_id: str | None = None):
        self.artifact_id = artifact_id
        if artifact_id:
            message = f"{message} (artifact: {artifact_id})"
        super().__init__(message)


# ── Catalog state ─────────────────────────────────────────────────


class StoreUninitializedError(ApiverError):
    """Raised when an operation needs a catalog and none exists yet."""

    def __init__(self, root=None, message: str | None = None):
        self.root = root
        if message is None:
            where = f" at {root}" if root is not None else ""
            message = (
                f"No apiver store found{where}\n"
                f"  Run 'apiver init <version>' first."
            )
        super().__init__(message)


CatalogNotFoundError = StoreUninitializedError


class NoCurrentVersionError(StoreUninitializedError):
    """Raised by commit when no current version has been selected."""

    def __init__(self, root=None):
        super().__init__(
            root,
            "No current version is set.\n"
            "  Use 'apiver switch <version>' or 'apiver new <version> from <base>' first.",
        )


class VersionNotFoundError(ApiverError):
    """Raised when a referenced version is absent from the catalog."""

    def __init__(self, version: str):
        self.version = version
        super().__init__(f"Version not found: {version!r}")


class DuplicateVersionError(ApiverError):
    """Raised when creating a version whose name is already taken."""

    def __init__(self, version: str, message: str | None = None):
        self.version = version
        super().__init__(message or f"Version already exists: {version!r}")


class TargetNotEmptyError(DuplicateVersionError):
    """Raised by copy when the target already holds content and force is off."""

    def __init__(self, version: str):
        super().__init__(
            version,
            f"Version {version!r} already has content; pass force=True (--force) to overwrite it",
        )


class InvalidVersionNameError(ApiverError):
    """Raised for names that cannot be used as catalog keys or artifact file names."""


class CorruptCatalogError(ApiverError):
    """Raised when the catalog references a version it does not contain."""


class ChainResolutionError(ApiverError):
    """Raised when a base chain never reaches a full snapshot (or loops)."""


class MissingSnapshotError(ApiverError):
    """Raised when no chain member has a persisted snapshot artifact."""


# ── Content ───────────────────────────────────────────────────────


class PatchApplyError(ApiverError):
    """Raised when a unified diff does not apply cleanly to the current content."""

    def __init__(self, path: str, reason: str = "patch does not apply"):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to apply patch for file {path}: {reason}")


class ReferentialIntegrityError(ApiverError):
    """Raised when deleting or overwriting a version that others use as their base."""

    def __init__(self, version: str, dependents: list[str], action: str = "delete"):
        self.version = version
        self.dependents = list(dependents)
        self.action = action
        super().__init__(
            f"Cannot {action} {version!r}: it is the base of {', '.join(self.dependents)}"
        )


class FileNotInVersionError(ApiverError):
    """Raised when a file path is absent from a reconstructed version."""

    def __init__(self, version: str, path: str):
        self.version = version
        self.path = path
        super().__init__(f"File not found in version {version!r}: {path}")


class WorkingFileNotFoundError(ApiverError):
    """Raised when a file path is absent from the live working area."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"File not found in working area: {path}")


class ArtifactNotFoundError(ApiverError):
    """Raised when no stored patch or hotfix matches the requested id."""

    def __init__(self, artifact_id: str):
        self.artifact_id = artifact_id
        super().__init__(f"Patch with id {artifact_id!r} not found")


class StoreLockedError(ApiverError):
    """Raised when another process holds the store's advisory lock."""
