"""
Version Store

The high-level API that the CLI and host applications talk to. It ties
together the catalog, the artifact repository, the chain resolver and
the live working area:

    project/                    ← live working area (what the user edits)
    ├── .apiver/
    │   ├── config.json
    │   ├── meta.json           ← catalog
    │   ├── current-version     ← which version the working area holds
    │   ├── snapshots/  patches/  hotfixes/
    │   ├── tmp/                ← per-invocation scratch directories
    │   └── lock/               ← advisory lock (atomic mkdir)
    ├── routes/users.js
    └── ...

    store = VersionStore.find()
    store.initialize("v1")              # snapshot the working area
    store.create_from("v2", "v1")       # working area now holds v1, marked v2
    # ... edit files ...
    store.commit("tweak users route")   # v2 = v1 + patch

Every mutating operation holds the advisory lock, performs all of its
artifact writes first and rewrites the catalog last, so a failure part
way through leaves the catalog describing the previous, consistent
state. Artifacts orphaned by such a failure are removed by cleanup().

Concurrency: single process, synchronous. The lock turns an accidental
second writer into StoreLockedError instead of a silent last-write-wins
race; it is not a multi-writer protocol.
"""

import json
import logging
import os
import shutil
import socket
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .artifacts import ArtifactRepository, snapshot_id
from .catalog import (
    CATALOG_FILE,
    Catalog,
    VersionEntry,
    VersionKind,
    atomic_write,
    validate_version_name,
)
from .config import StoreConfig
from .envelope import Envelope
from .errors import (
    DuplicateVersionError,
    FileNotInVersionError,
    NoCurrentVersionError,
    ReferentialIntegrityError,
    StoreLockedError,
    StoreUninitializedError,
    TargetNotEmptyError,
    WorkingFileNotFoundError,
)
from .patch import FileChange, Patch, count_changes, diff, to_text, unified_diff
from .resolver import ChainResolver
from .tree import (
    META_DIR_NAME,
    ExclusionRules,
    decode_tree,
    encode_directory,
    flatten_tree,
    get_file,
    normalize_path,
)

logger = logging.getLogger(__name__)

POINTER_FILE = "current-version"
SCRATCH_DIR = "tmp"
LOCK_DIR = "lock"

# Never versioned and never wiped from the working area
STORE_EXCLUDE = frozenset({".git", "node_modules"})

# A lock older than this is considered abandoned
LOCK_STALE_AFTER = 600.0


@dataclass
class CommitResult:
    version: str
    kind: VersionKind
    artifact: str
    changes: int = 0
    deletes: int = 0
    folded_hotfixes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "kind": self.kind.value,
            "artifact": self.artifact,
            "changes": self.changes,
            "deletes": self.deletes,
            "folded_hotfixes": self.folded_hotfixes,
        }


@dataclass
class FileDiff:
    """One path's difference between two versions."""
    path: str
    status: str                 # "added" | "removed" | "modified"
    additions: int = 0
    deletions: int = 0
    diff: str | None = None     # Unified diff; None for binary content

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "status": self.status,
            "additions": self.additions,
            "deletions": self.deletions,
            "diff": self.diff,
        }


@dataclass
class VersionListing:
    versions: list[str]
    current: str | None

    def to_dict(self) -> dict:
        return {"versions": self.versions, "current": self.current}


@dataclass
class CleanupReport:
    scratch_dirs: list[str] = field(default_factory=list)
    orphaned_artifacts: list[str] = field(default_factory=list)
    stale_lock: bool = False

    @property
    def empty(self) -> bool:
        return not (self.scratch_dirs or self.orphaned_artifacts or self.stale_lock)

    def to_dict(self) -> dict:
        return {
            "scratch_dirs": self.scratch_dirs,
            "orphaned_artifacts": self.orphaned_artifacts,
            "stale_lock": self.stale_lock,
        }


def _is_binary(content: bytes) -> bool:
    return b"\0" in content


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class VersionStore:
    """A versioned-snapshot store rooted at a project directory."""

    def __init__(
        self,
        root: Path,
        config: StoreConfig | None = None,
        envelope: Envelope | None = None,
    ):
        self.root = Path(root).resolve()
        self.meta_dir = self.root / META_DIR_NAME
        self.catalog_path = self.meta_dir / CATALOG_FILE
        self.pointer_path = self.meta_dir / POINTER_FILE
        self.scratch_root = self.meta_dir / SCRATCH_DIR
        self.lock_path = self.meta_dir / LOCK_DIR

        self.config = config or StoreConfig.load(self.meta_dir)
        self.envelope = envelope or Envelope.from_config(self.config)
        self.artifacts = ArtifactRepository(self.meta_dir, self.envelope)
        self.rules = ExclusionRules(STORE_EXCLUDE | frozenset(self.config.exclude))
        self._lock_depth = 0

    @classmethod
    def find(cls, start_path: Path | None = None, **kwargs) -> "VersionStore":
        """
        Find the store by walking up from start_path.

        Falls back to start_path itself when no .apiver directory exists
        anywhere above it, so initialize() can create one there.
        """
        start = Path(start_path or Path.cwd()).resolve()
        path = start
        while True:
            if (path / META_DIR_NAME / CATALOG_FILE).exists():
                return cls(path, **kwargs)
            parent = path.parent
            if parent == path:
                break
            path = parent
        return cls(start, **kwargs)

    @property
    def initialized(self) -> bool:
        return self.catalog_path.exists()

    # ── Internals ─────────────────────────────────────────────────

    def _load_catalog(self) -> Catalog:
        if not self.catalog_path.exists():
            raise StoreUninitializedError(self.root)
        return Catalog.load(self.catalog_path)

    def _resolver(self, catalog: Catalog) -> ChainResolver:
        return ChainResolver(catalog, self.artifacts)

    def current_version(self) -> str | None:
        if not self.pointer_path.exists():
            return None
        name = self.pointer_path.read_text().strip()
        return name or None

    def _set_current(self, name: str | None):
        if name is None:
            self.pointer_path.unlink(missing_ok=True)
        else:
            atomic_write(self.pointer_path, name + "\n")

    @contextmanager
    def _locked(self):
        """Hold the advisory store lock (re-entrant within this instance)."""
        if self._lock_depth:
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
            return

        self.meta_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.lock_path.mkdir()
        except FileExistsError:
            if not self._lock_is_stale():
                owner = self._read_lock_owner() or {}
                raise StoreLockedError(
                    f"Store is locked by pid {owner.get('pid', '?')} on "
                    f"{owner.get('hostname', '?')}\n"
                    f"  If no other apiver process is running, run 'apiver cleanup'."
                )
            logger.info("Reclaiming stale lock at %s", self.lock_path)
            shutil.rmtree(self.lock_path, ignore_errors=True)
            try:
                self.lock_path.mkdir()
            except FileExistsError:
                raise StoreLockedError("Store lock was taken by another process") from None

        atomic_write(self.lock_path / "owner.json", json.dumps({
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": time.time(),
        }, indent=2))
        self._lock_depth = 1
        try:
            yield
        finally:
            self._lock_depth = 0
            shutil.rmtree(self.lock_path, ignore_errors=True)

    def _read_lock_owner(self) -> dict | None:
        owner_path = self.lock_path / "owner.json"
        if not owner_path.exists():
            return None
        try:
            return json.loads(owner_path.read_text())
        except (json.JSONDecodeError, OSError):
            return None

    def _lock_is_stale(self) -> bool:
        owner = self._read_lock_owner()
        if owner is None:
            # Owner metadata never written; judge by the directory's age
            try:
                age = time.time() - self.lock_path.stat().st_mtime
            except FileNotFoundError:
                return True
            return age > LOCK_STALE_AFTER
        if time.time() - owner.get("acquired_at", 0) > LOCK_STALE_AFTER:
            return True
        if owner.get("hostname") == socket.gethostname():
            return not _pid_alive(owner.get("pid", -1))
        return False

    @contextmanager
    def _scratch(self, label: str):
        """A unique scratch directory, removed on every exit path."""
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=f"{label}-", dir=str(self.scratch_root)))
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)

    def _clear_working_area(self):
        """Remove everything from the live area except excluded entries."""
        for item in self.root.iterdir():
            if self.rules.excludes(item.name):
                continue
            if item.is_dir() and not item.is_symlink():
                shutil.rmtree(item)
            else:
                item.unlink()

    @staticmethod
    def _clear_directory(path: Path):
        if path.exists():
            for item in path.iterdir():
                if item.is_dir() and not item.is_symlink():
                    shutil.rmtree(item)
                else:
                    item.unlink()
        else:
            path.mkdir(parents=True)

    def _materialize(self, tree: dict, target_dir: Path | None):
        if target_dir is None:
            self._clear_working_area()
            decode_tree(tree, self.root)
        else:
            self._clear_directory(target_dir)
            decode_tree(tree, target_dir)

    def _delete_artifacts(self, artifact_ids):
        for artifact_id in artifact_ids:
            self.artifacts.delete(artifact_id)

    def _full_snapshot_due(self, ordinal: int) -> bool:
        interval = self.config.full_snapshot_interval
        return interval > 0 and ordinal % interval == 0

    # ── Operations ────────────────────────────────────────────────

    def initialize(self, name: str) -> VersionEntry:
        """
        Snapshot the live working area as a new full version.

        Creates the .apiver layout on first use. Running it again in an
        existing store registers another independent full version.
        """
        validate_version_name(name)
        self.meta_dir.mkdir(parents=True, exist_ok=True)
        self.config.write_default(self.meta_dir)
        self.artifacts.ensure_layout()

        with self._locked():
            catalog = Catalog.load(self.catalog_path) if self.initialized else Catalog()
            if name in catalog:
                raise DuplicateVersionError(name)

            tree = encode_directory(self.root, self.rules)
            artifact = self.artifacts.write_snapshot(name, tree)
            entry = VersionEntry(
                name=name,
                kind=VersionKind.FULL,
                snapshot=artifact,
                ordinal=catalog.next_ordinal(),
            )
            catalog.add(entry)
            catalog.save(self.catalog_path)
            self._set_current(name)

        logger.info("Initialized %s with %d files", name, len(flatten_tree(tree)))
        return entry

    def create_from(self, name: str, base: str) -> VersionEntry:
        """
        Register name as a new version derived from base, and load base's
        content into the working area so it can be edited as name.
        """
        validate_version_name(name)
        with self._locked():
            catalog = self._load_catalog()
            catalog.get(base)
            if name in catalog:
                raise DuplicateVersionError(name)

            tree = self._resolver(catalog).resolve(base)
            ordinal = catalog.next_ordinal()
            entry = VersionEntry(name=name, kind=VersionKind.PATCH, base=base, ordinal=ordinal)
            if self._full_snapshot_due(ordinal):
                entry.kind = VersionKind.FULL
                entry.snapshot = self.artifacts.write_snapshot(name, tree)

            catalog.add(entry)
            catalog.save(self.catalog_path)
            self._materialize(tree, None)
            self._set_current(name)

        logger.info("Created %s (%s) from %s", name, entry.kind.value, base)
        return entry

    def commit(self, message: str = "") -> CommitResult:
        """
        Record the working area as the current version's content.

        Full versions get their snapshot rewritten. Patch versions get a
        new patch appended, computed against the version's own lineage
        (base chain plus earlier patches, without hotfixes). Hotfixes of
        the version are folded in: the working area already reflects them.
        """
        with self._locked():
            catalog = self._load_catalog()
            name = self.current_version()
            if name is None:
                raise NoCurrentVersionError(self.root)
            entry = catalog.get(name)

            if entry.kind is VersionKind.FULL:
                tree = encode_directory(self.root, self.rules)
                entry.snapshot = self.artifacts.write_snapshot(name, tree)
                result = CommitResult(name, entry.kind, entry.snapshot, changes=len(flatten_tree(tree)))
            else:
                with self._scratch(f"commit-{name}") as scratch:
                    baseline = self._resolver(catalog).resolve(name, include_hotfixes=False)
                    decode_tree(baseline, scratch)
                    patch = diff(scratch, self.root, self.rules)
                artifact = self.artifacts.write_patch(name, patch, entry.patches)
                entry.patches.append(artifact)
                result = CommitResult(
                    name, entry.kind, artifact,
                    changes=len(patch.changes), deletes=len(patch.deletes),
                )

            folded = list(catalog.hotfixes.get(name, []))
            catalog.hotfixes[name] = []
            result.folded_hotfixes = folded
            entry.message = message or None
            entry.updated_at = time.time()
            catalog.save(self.catalog_path)
            self._delete_artifacts(folded)

        logger.info("Committed %s (%s) %s", name, result.artifact, message)
        return result

    def switch(self, name: str, target_dir: Path | None = None) -> Path:
        """
        Reconstruct a version into the working area (or target_dir).

        The current-version pointer only moves when the working area is
        the destination.
        """
        with self._locked():
            catalog = self._load_catalog()
            tree = self._resolver(catalog).resolve(name)
            destination = Path(target_dir).resolve() if target_dir is not None else None
            if destination == self.root:
                destination = None
            elif destination is not None and (
                self.root.is_relative_to(destination) or destination.is_relative_to(self.meta_dir)
            ):
                raise ValueError(f"Refusing to switch into {destination}: it would overwrite the store")
            self._materialize(tree, destination)
            if destination is None:
                self._set_current(name)

        logger.info("Switched %s to %s", destination or "working area", name)
        return destination or self.root

    def copy(self, source: str, target: str, force: bool = False) -> VersionEntry:
        """
        Replace target's content with source's, as a fresh full snapshot.

        Target's history collapses to that single snapshot (no base, no
        patches, no hotfixes), then the working area switches to target.
        A target other versions are based on is refused even with force.
        """
        with self._locked():
            catalog = self._load_catalog()
            catalog.get(source)
            old = catalog.get(target)
            dependents = catalog.dependents(target)
            if dependents:
                raise ReferentialIntegrityError(target, dependents, action="overwrite")
            if not force and (old.snapshot or old.patches or catalog.hotfixes.get(target)):
                raise TargetNotEmptyError(target)

            tree = self._resolver(catalog).resolve(source)
            artifact = self.artifacts.write_snapshot(target, tree)
            stale = [a for a in catalog.artifact_ids(target) if a != artifact]

            entry = VersionEntry(
                name=target,
                kind=VersionKind.FULL,
                snapshot=artifact,
                ordinal=old.ordinal,
                created_at=old.created_at,
                message=f"copied from {source}",
            )
            catalog.versions[target] = entry
            catalog.hotfixes[target] = []
            catalog.save(self.catalog_path)
            self._delete_artifacts(stale)

            self._materialize(tree, None)
            self._set_current(target)

        logger.info("Copied %s to %s", source, target)
        return entry

    def delete(self, name: str) -> list[str]:
        """Delete a version nobody depends on, with all of its artifacts."""
        with self._locked():
            catalog = self._load_catalog()
            catalog.get(name)
            dependents = catalog.dependents(name)
            if dependents:
                raise ReferentialIntegrityError(name, dependents)

            artifact_ids = catalog.artifact_ids(name)
            snapshot = snapshot_id(name)
            if snapshot not in artifact_ids and self.artifacts.exists(snapshot):
                artifact_ids.append(snapshot)
            catalog.remove(name)
            catalog.save(self.catalog_path)
            if self.current_version() == name:
                self._set_current(None)
            self._delete_artifacts(artifact_ids)

        logger.info("Deleted %s (%d artifacts)", name, len(artifact_ids))
        return artifact_ids

    def diff(self, version_a: str, version_b: str) -> list[FileDiff]:
        """Per-file differences between two versions, sorted by path."""
        catalog = self._load_catalog()
        catalog.get(version_a)
        catalog.get(version_b)
        resolver = self._resolver(catalog)

        with self._scratch(f"diff-{version_a}") as dir_a, self._scratch(f"diff-{version_b}") as dir_b:
            decode_tree(resolver.resolve(version_a), dir_a)
            decode_tree(resolver.resolve(version_b), dir_b)
            files_a = flatten_tree(encode_directory(dir_a, self.rules))
            files_b = flatten_tree(encode_directory(dir_b, self.rules))

        results = []
        for path in sorted(set(files_a) | set(files_b)):
            old = files_a.get(path)
            new = files_b.get(path)
            if old == new:
                continue
            status = "added" if old is None else "removed" if new is None else "modified"
            old, new = old or b"", new or b""
            if _is_binary(old) or _is_binary(new):
                results.append(FileDiff(path, status))
                continue
            text = unified_diff(to_text(old), to_text(new), path)
            additions, deletions = count_changes(text)
            results.append(FileDiff(path, status, additions, deletions, text))
        return results

    def inspect(self, name: str, rel_path: str) -> bytes:
        """Content of one file of a version, without touching the working area."""
        catalog = self._load_catalog()
        tree = self._resolver(catalog).resolve(name)
        content = get_file(tree, rel_path)
        if content is None:
            raise FileNotInVersionError(name, rel_path)
        return content

    def hotfix(self, name: str, rel_path: str) -> str | None:
        """
        Record the working area's copy of one file as a hotfix of name.

        Returns the new hotfix artifact id, or None when the file already
        matches the version's content.
        """
        rel = normalize_path(rel_path)
        with self._locked():
            catalog = self._load_catalog()
            catalog.get(name)
            live = self.root / rel
            if not rel or not live.is_file():
                raise WorkingFileNotFoundError(rel_path)

            tree = self._resolver(catalog).resolve(name)
            current = get_file(tree, rel) or b""
            updated = live.read_bytes()
            if current == updated:
                logger.info("No changes made to %s in %s", rel, name)
                return None

            patch = Patch(changes=[
                FileChange(file=rel, diff=unified_diff(to_text(current), to_text(updated), rel))
            ])
            hotfixes = catalog.hotfixes_for(name)
            artifact = self.artifacts.write_hotfix(name, patch, hotfixes)
            hotfixes.append(artifact)
            catalog.get(name).updated_at = time.time()
            catalog.save(self.catalog_path)

        logger.info("Hotfix %s applied to %s for %s", artifact, name, rel)
        return artifact

    def entry(self, name: str) -> VersionEntry:
        return self._load_catalog().get(name)

    def hotfixes(self, name: str) -> list[str]:
        catalog = self._load_catalog()
        catalog.get(name)
        return list(catalog.hotfixes.get(name, []))

    def resolve(self, name: str, include_hotfixes: bool = True) -> dict:
        return self._resolver(self._load_catalog()).resolve(name, include_hotfixes)

    def show_patch(self, query: str) -> tuple[str, Patch]:
        """Decode a stored patch or hotfix artifact."""
        self._load_catalog()
        artifact_id = self.artifacts.find_patch(query)
        return artifact_id, self.artifacts.read_patch(artifact_id)

    def cleanup(self) -> CleanupReport:
        """
        Remove debris left by interrupted operations: scratch directories,
        a stale lock, and artifact files no catalog entry references.
        """
        report = CleanupReport()
        if self.lock_path.exists() and self._lock_is_stale():
            shutil.rmtree(self.lock_path, ignore_errors=True)
            report.stale_lock = True

        with self._locked():
            catalog = self._load_catalog()
            if self.scratch_root.is_dir():
                for item in sorted(self.scratch_root.iterdir()):
                    if item.is_dir():
                        shutil.rmtree(item, ignore_errors=True)
                    else:
                        item.unlink()
                    report.scratch_dirs.append(item.name)

            referenced = catalog.referenced_artifacts()
            for artifact_id in self.artifacts.all_ids():
                if artifact_id not in referenced:
                    self.artifacts.delete(artifact_id)
                    report.orphaned_artifacts.append(artifact_id)

        logger.info(
            "Cleanup removed %d scratch dirs, %d orphaned artifacts",
            len(report.scratch_dirs), len(report.orphaned_artifacts),
        )
        return report

    def verify(self) -> list[str]:
        """Eagerly check every chain and every referenced artifact."""
        catalog = self._load_catalog()
        problems = catalog.validate()
        for name in catalog.names():
            for artifact_id in catalog.artifact_ids(name):
                if not self.artifacts.exists(artifact_id):
                    problems.append(f"{name}: artifact {artifact_id} is missing")
        current = self.current_version()
        if current is not None and current not in catalog:
            problems.append(f"current version {current!r} is not in the catalog")
        return problems

    # Must stay last in the class: later `list[...]` annotations would hit it
    def list(self) -> VersionListing:
        catalog = self._load_catalog()
        return VersionListing(versions=catalog.names(), current=self.current_version())
