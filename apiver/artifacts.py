"""
Artifact Repository

Owns the encrypted files under .apiver/:

    snapshots/<version>.full.apiver       full Directory Tree
    patches/<version>.<n>.patch.apiver    Patch
    hotfixes/<version>.<n>.hotfix.apiver  Patch (out-of-band)

Artifact ids are the file names; the catalog stores ids, never paths.
Writes go through a temp file + rename so a crash never leaves a
half-written artifact behind under its final name.
"""

import logging
import os
import tempfile
from pathlib import Path

from .envelope import Envelope
from .errors import ArtifactNotFoundError, CorruptArtifactError
from .patch import Patch
from .tree import tree_from_json, tree_to_json

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX = ".apiver"
SNAPSHOTS_DIR = "snapshots"
PATCHES_DIR = "patches"
HOTFIXES_DIR = "hotfixes"


def snapshot_id(version: str) -> str:
    return f"{version}.full{ARTIFACT_SUFFIX}"


class ArtifactRepository:
    """Reads and writes sealed artifacts for one store."""

    def __init__(self, meta_dir: Path, envelope: Envelope):
        self.meta_dir = meta_dir
        self.envelope = envelope
        self.snapshots_dir = meta_dir / SNAPSHOTS_DIR
        self.patches_dir = meta_dir / PATCHES_DIR
        self.hotfixes_dir = meta_dir / HOTFIXES_DIR

    def ensure_layout(self):
        for d in (self.snapshots_dir, self.patches_dir, self.hotfixes_dir):
            d.mkdir(parents=True, exist_ok=True)

    # ── Paths ─────────────────────────────────────────────────────

    def path_for(self, artifact_id: str) -> Path:
        """Map an artifact id to its file, based on the id's kind suffix."""
        if artifact_id.endswith(f".full{ARTIFACT_SUFFIX}"):
            return self.snapshots_dir / artifact_id
        if artifact_id.endswith(f".hotfix{ARTIFACT_SUFFIX}"):
            return self.hotfixes_dir / artifact_id
        return self.patches_dir / artifact_id

    def exists(self, artifact_id: str | None) -> bool:
        return bool(artifact_id) and self.path_for(artifact_id).is_file()

    def _next_id(self, version: str, kind: str, taken: list[str]) -> str:
        n = len(taken) + 1
        while True:
            candidate = f"{version}.{n}.{kind}{ARTIFACT_SUFFIX}"
            if candidate not in taken and not self.path_for(candidate).exists():
                return candidate
            n += 1

    def all_ids(self) -> list[str]:
        ids = []
        for d in (self.snapshots_dir, self.patches_dir, self.hotfixes_dir):
            if d.is_dir():
                ids.extend(p.name for p in sorted(d.iterdir()) if p.name.endswith(ARTIFACT_SUFFIX))
        return ids

    # ── Raw I/O ───────────────────────────────────────────────────

    def _write(self, artifact_id: str, payload: bytes) -> str:
        path = self.path_for(artifact_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        sealed = self.envelope.seal(payload)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".artifact.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(sealed)
                f.flush()
                os.fsync(f.fileno())
            Path(tmp_path).replace(path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug("Wrote artifact %s (%d bytes)", artifact_id, len(sealed))
        return artifact_id

    def _read(self, artifact_id: str) -> bytes:
        path = self.path_for(artifact_id)
        if not path.is_file():
            raise ArtifactNotFoundError(artifact_id)
        return self.envelope.open(path.read_bytes(), artifact_id=artifact_id)

    def delete(self, artifact_id: str) -> bool:
        path = self.path_for(artifact_id)
        if path.is_file():
            path.unlink()
            logger.debug("Deleted artifact %s", artifact_id)
            return True
        return False

    # ── Typed access ──────────────────────────────────────────────

    def write_snapshot(self, version: str, tree: dict) -> str:
        return self._write(snapshot_id(version), tree_to_json(tree))

    def read_snapshot(self, artifact_id: str) -> dict:
        data = self._read(artifact_id)
        try:
            return tree_from_json(data)
        except ValueError as e:
            # json.JSONDecodeError, UnicodeDecodeError and binascii.Error are all ValueErrors
            raise CorruptArtifactError(f"Snapshot payload is invalid: {e}", artifact_id) from e

    def write_patch(self, version: str, patch: Patch, taken: list[str]) -> str:
        return self._write(self._next_id(version, "patch", taken), patch.to_json())

    def write_hotfix(self, version: str, patch: Patch, taken: list[str]) -> str:
        return self._write(self._next_id(version, "hotfix", taken), patch.to_json())

    def read_patch(self, artifact_id: str) -> Patch:
        data = self._read(artifact_id)
        try:
            return Patch.from_json(data)
        except (ValueError, KeyError, TypeError) as e:
            raise CorruptArtifactError(f"Patch payload is invalid: {e}", artifact_id) from e

    def find_patch(self, query: str) -> str:
        """
        Find a patch or hotfix artifact by id.

        Accepts the exact file name, the name without the .apiver suffix,
        or any unique-enough substring (first match in sorted order, patches
        before hotfixes).
        """
        candidates = []
        for d in (self.patches_dir, self.hotfixes_dir):
            if d.is_dir():
                candidates.extend(
                    p.name for p in sorted(d.iterdir())
                    if p.is_file() and p.name.endswith(ARTIFACT_SUFFIX)
                )
        for exact in (query, f"{query}{ARTIFACT_SUFFIX}", f"{query}.patch{ARTIFACT_SUFFIX}"):
            if exact in candidates:
                return exact
        for name in candidates:
            if query in name:
                return name
        raise ArtifactNotFoundError(query)
