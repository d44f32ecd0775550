"""
Catalog

The single source of truth for version metadata, persisted as one JSON
document (.apiver/meta.json):

    {
      "format": 1,
      "sequence": 3,
      "versions": {
        "v1": {"type": "full", "snapshot": "v1.full.apiver", ...},
        "v2": {"type": "patch", "base": "v1", "patches": ["v2.1.patch.apiver"], ...}
      },
      "hotfixes": {"v1": ["v1.1.hotfix.apiver"]}
    }

Versions form backward-pointing chains through ``base``. A patch version
is reconstructed by walking back to the nearest full version and
replaying patches forward; see resolver.py.

Every mutating store operation reads the catalog, mutates it in memory
and rewrites it atomically (temp file + fsync + rename), after all of
its artifact I/O has succeeded.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import (
    CorruptCatalogError,
    InvalidVersionNameError,
    StoreUninitializedError,
    VersionNotFoundError,
)

logger = logging.getLogger(__name__)

CATALOG_FILE = "meta.json"
CATALOG_FORMAT = 1


def atomic_write(path: Path, content: str):
    """
    Write content to a file atomically via write-to-temp + rename.

    Prevents a partial/corrupt catalog if the process dies mid-write.
    """
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        Path(tmp_path).replace(path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def validate_version_name(name: str):
    """Version names become artifact file names, so keep them path-safe."""
    if not name or not isinstance(name, str):
        raise InvalidVersionNameError("Version name cannot be empty")
    if "\0" in name:
        raise InvalidVersionNameError(f"Version name contains null byte: {name!r}")
    if ".." in name or "/" in name or "\\" in name:
        raise InvalidVersionNameError(
            f"Version name cannot contain '/', '\\\\' or '..': {name!r}"
        )
    if name != name.strip():
        raise InvalidVersionNameError(f"Version name has surrounding whitespace: {name!r}")


class VersionKind(Enum):
    FULL = "full"     # Has its own snapshot artifact; root of a chain
    PATCH = "patch"   # Reconstructed from its base plus its patches


@dataclass
class VersionEntry:
    """Catalog metadata for one named version."""
    name: str
    kind: VersionKind
    base: str | None = None
    snapshot: str | None = None          # Snapshot artifact id (full versions)
    patches: list[str] = field(default_factory=list)  # Application order
    ordinal: int = 0                     # Creation sequence number
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    message: str | None = None           # Last commit message

    def to_dict(self) -> dict:
        d = {
            "type": self.kind.value,
            "ordinal": self.ordinal,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.base is not None:
            d["base"] = self.base
        if self.snapshot is not None:
            d["snapshot"] = self.snapshot
        if self.patches:
            d["patches"] = list(self.patches)
        if self.message:
            d["message"] = self.message
        return d

    @classmethod
    def from_dict(cls, name: str, d: dict) -> "VersionEntry":
        try:
            kind = VersionKind(d["type"])
        except (KeyError, ValueError) as e:
            raise CorruptCatalogError(
                f"Catalog entry {name!r} has invalid type {d.get('type')!r}"
            ) from e
        return cls(
            name=name,
            kind=kind,
            base=d.get("base"),
            snapshot=d.get("snapshot"),
            patches=list(d.get("patches", [])),
            ordinal=d.get("ordinal", 0),
            created_at=d.get("created_at", 0.0),
            updated_at=d.get("updated_at", 0.0),
            message=d.get("message"),
        )


class Catalog:
    """In-memory view of meta.json."""

    def __init__(
        self,
        versions: dict[str, VersionEntry] | None = None,
        hotfixes: dict[str, list[str]] | None = None,
        sequence: int = 0,
    ):
        self.versions = versions if versions is not None else {}
        self.hotfixes = hotfixes if hotfixes is not None else {}
        self.sequence = sequence

    def __contains__(self, name: str) -> bool:
        return name in self.versions

    def __len__(self) -> int:
        return len(self.versions)

    def names(self) -> list[str]:
        return list(self.versions)

    def get(self, name: str) -> VersionEntry:
        entry = self.versions.get(name)
        if entry is None:
            raise VersionNotFoundError(name)
        return entry

    def next_ordinal(self) -> int:
        self.sequence += 1
        return self.sequence

    def add(self, entry: VersionEntry):
        self.versions[entry.name] = entry
        self.hotfixes.setdefault(entry.name, [])

    def remove(self, name: str) -> VersionEntry:
        entry = self.get(name)
        del self.versions[name]
        self.hotfixes.pop(name, None)
        return entry

    def hotfixes_for(self, name: str) -> list[str]:
        return self.hotfixes.setdefault(name, [])

    def dependents(self, name: str) -> list[str]:
        """Versions whose base is name."""
        return [v.name for v in self.versions.values() if v.base == name and v.name != name]

    def artifact_ids(self, name: str) -> list[str]:
        """Every artifact id referenced by a version (snapshot, patches, hotfixes)."""
        entry = self.get(name)
        ids = [entry.snapshot] if entry.snapshot else []
        ids.extend(entry.patches)
        ids.extend(self.hotfixes.get(name, []))
        return ids

    def referenced_artifacts(self) -> set[str]:
        refs = set()
        for name in self.versions:
            refs.update(self.artifact_ids(name))
        return refs

    def validate(self) -> list[str]:
        """
        Walk every version's base chain eagerly.

        Returns a list of human-readable problems (dangling bases, cycles,
        patch versions without a base). An empty list means every chain
        terminates at a full version.
        """
        problems = []
        for name in self.versions:
            seen = set()
            cur = name
            while True:
                if cur in seen:
                    problems.append(f"{name}: base chain loops through {cur!r}")
                    break
                seen.add(cur)
                entry = self.versions.get(cur)
                if entry is None:
                    problems.append(f"{name}: base {cur!r} is missing from the catalog")
                    break
                if entry.kind is VersionKind.FULL:
                    break
                if entry.base is None:
                    problems.append(f"{name}: patch version {cur!r} has no base")
                    break
                cur = entry.base
        return problems

    # ── Persistence ───────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "format": CATALOG_FORMAT,
            "sequence": self.sequence,
            "versions": {name: e.to_dict() for name, e in self.versions.items()},
            "hotfixes": {name: list(h) for name, h in self.hotfixes.items()},
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Catalog":
        versions_raw = d.get("versions", {})
        if not isinstance(versions_raw, dict):
            raise CorruptCatalogError("Catalog 'versions' is not an object")
        versions = {name: VersionEntry.from_dict(name, v) for name, v in versions_raw.items()}
        hotfixes = {name: list(h) for name, h in d.get("hotfixes", {}).items()}
        sequence = d.get("sequence", 0)
        # Older catalogs carry no ordinals; keep the counter ahead of them
        sequence = max([sequence, len(versions)] + [v.ordinal for v in versions.values()])
        return cls(versions=versions, hotfixes=hotfixes, sequence=sequence)

    @classmethod
    def load(cls, path: Path) -> "Catalog":
        if not path.exists():
            raise StoreUninitializedError(path.parent.parent)
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise CorruptCatalogError(f"Catalog {path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise CorruptCatalogError(f"Catalog {path} is not an object")
        return cls.from_dict(data)

    def save(self, path: Path):
        atomic_write(path, json.dumps(self.to_dict(), indent=2))
        logger.debug("Wrote catalog with %d versions to %s", len(self.versions), path)
