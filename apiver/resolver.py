"""
Version Chain Resolver

Reconstructs any version from the catalog:

    v1 (full) ← v2 (patch) ← v3 (patch)

    resolve("v3") = snapshot(v1) + patches(v2) + patches(v3) + hotfixes(v3)

The chain is computed by following ``base`` backwards from the target to
the first full version, then replayed root-first. Patch and hotfix
order is exactly the order recorded in the catalog, never re-sorted, so
resolving the same version twice yields identical trees.

Catalog inconsistencies are typed errors, discovered precisely:

- a base missing from the catalog      → CorruptCatalogError
- a loop, or a patch version w/o base  → ChainResolutionError
- no chain member has a snapshot file  → MissingSnapshotError

A missing *patch* or *hotfix* artifact is only a warning: a version may
legitimately have produced no artifact, and the rest of the chain still
applies.
"""

import logging

from .artifacts import ArtifactRepository, snapshot_id
from .catalog import Catalog, VersionKind
from .errors import (
    ChainResolutionError,
    CorruptCatalogError,
    MissingSnapshotError,
)
from .patch import apply

logger = logging.getLogger(__name__)


class ChainResolver:
    def __init__(self, catalog: Catalog, artifacts: ArtifactRepository):
        self.catalog = catalog
        self.artifacts = artifacts

    def chain(self, name: str) -> list[str]:
        """Version names from the nearest full ancestor to name, root first."""
        entry = self.catalog.get(name)
        chain = []
        seen = set()
        cur = name
        while True:
            if cur in seen:
                raise ChainResolutionError(
                    f"Base chain of {name!r} loops back to {cur!r}"
                )
            seen.add(cur)
            chain.insert(0, cur)
            if entry.kind is VersionKind.FULL:
                return chain
            if entry.base is None:
                raise ChainResolutionError(
                    f"Patch version {cur!r} has no base; {name!r} never reaches a full snapshot"
                )
            base = entry.base
            if base not in self.catalog:
                raise CorruptCatalogError(
                    f"Catalog entry missing for {base!r} (base of {cur!r}), meta.json is corrupt"
                )
            cur = base
            entry = self.catalog.get(cur)

    def _snapshot_of(self, name: str) -> str | None:
        entry = self.catalog.get(name)
        for candidate in (entry.snapshot, snapshot_id(name)):
            if self.artifacts.exists(candidate):
                return candidate
        return None

    def resolve(self, name: str, include_hotfixes: bool = True) -> dict:
        """
        Rebuild the directory tree of a version in memory.

        With include_hotfixes=False the result is the version's lineage
        content only (used as the baseline when committing it).
        """
        chain = self.chain(name)

        full_index = None
        snapshot = None
        for i, member in enumerate(chain):
            snapshot = self._snapshot_of(member)
            if snapshot is not None:
                full_index = i
                break
        if full_index is None:
            raise MissingSnapshotError(
                f"No full snapshot found in chain {' → '.join(chain)}; cannot reconstruct {name!r}"
            )

        logger.debug("Resolving %s via %s from %s", name, chain, snapshot)
        tree = self.artifacts.read_snapshot(snapshot)

        for member in chain[full_index + 1:]:
            for artifact_id in self.catalog.get(member).patches:
                if not self.artifacts.exists(artifact_id):
                    logger.warning("Patch %s for %s missing, skipping", artifact_id, member)
                    continue
                apply(tree, self.artifacts.read_patch(artifact_id))

        if include_hotfixes:
            for artifact_id in self.catalog.hotfixes.get(name, []):
                if not self.artifacts.exists(artifact_id):
                    logger.warning("Hotfix %s for %s not found, skipping", artifact_id, name)
                    continue
                logger.debug("Applying hotfix %s to %s", artifact_id, name)
                apply(tree, self.artifacts.read_patch(artifact_id))

        return tree
