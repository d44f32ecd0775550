"""
Directory Trees

The canonical in-memory form of a version is a nested dict:

    {"routes": {"users.js": b"..."}, "package.json": b"..."}

Keys are path segments. A ``bytes`` value is a file, a ``dict`` value is
a subdirectory. On the wire (inside a snapshot artifact) file bytes are
base64 strings, so the whole tree is one JSON document.

Exclusion is centralized in ExclusionRules: the codec, the patch engine
and the store all consult the same predicate, so a name skipped when
snapshotting is also skipped when diffing and never wiped when clearing
the working area.
"""

import base64
import fnmatch
import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

META_DIR_NAME = ".apiver"

# Working-copy bookkeeping file. Never versioned, never patched.
MARKER_NAME = ".version"

# Scratch names used by early releases of the tool; always skipped.
RESERVED_NAMES = frozenset({"0", "1", "2"})

DEFAULT_EXCLUDE = frozenset({META_DIR_NAME, MARKER_NAME}) | RESERVED_NAMES


class ExclusionRules:
    """
    Shared exclusion predicate.

    Patterns are matched against base names. Plain names are compared
    exactly; names containing glob characters (``*``, ``?``, ``[``) go
    through fnmatch. The reserved names are always part of the set.
    """

    def __init__(self, names: Iterable[str] = ()):
        self.names = frozenset(names) | DEFAULT_EXCLUDE
        self._globs = tuple(n for n in self.names if any(c in n for c in "*?["))

    def __repr__(self):
        return f"ExclusionRules({sorted(self.names)!r})"

    def __eq__(self, other):
        return isinstance(other, ExclusionRules) and self.names == other.names

    def __hash__(self):
        return hash(self.names)

    def union(self, names: Iterable[str]) -> "ExclusionRules":
        return ExclusionRules(self.names | frozenset(names))

    def excludes(self, name: str) -> bool:
        """True if an entry with this base name must be skipped."""
        if name in self.names:
            return True
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self._globs)

    def excludes_path(self, rel_path: str) -> bool:
        """True if any segment of a '/'-joined relative path is excluded."""
        return any(self.excludes(part) for part in rel_path.split("/"))


DEFAULT_RULES = ExclusionRules()


def normalize_path(rel_path: str) -> str:
    """Turn a user-supplied relative path into the '/'-joined tree form."""
    parts = [p for p in rel_path.replace("\\", "/").split("/") if p not in ("", ".")]
    if any(p == ".." for p in parts):
        raise ValueError(f"Path escapes the version root: {rel_path!r}")
    return "/".join(parts)


# ── Directory ⇄ Tree ──────────────────────────────────────────────


def encode_directory(root: Path, rules: ExclusionRules | None = None) -> dict:
    """
    Read a directory subtree into a nested tree.

    Excluded entries are skipped without recursing into them. Symlinks
    are skipped so a snapshot never reads outside the tree. Entries are
    visited in sorted order, so identical filesystem state always gives
    an identical tree.
    """
    rules = rules or DEFAULT_RULES
    tree = {}
    for item in sorted(Path(root).iterdir()):
        if rules.excludes(item.name):
            continue
        if item.is_symlink():
            logger.debug("Skipping symlink: %s", item)
            continue
        if item.is_dir():
            tree[item.name] = encode_directory(item, rules)
        elif item.is_file():
            tree[item.name] = item.read_bytes()
    return tree


def decode_tree(tree: Mapping, target: Path) -> None:
    """
    Write a tree onto disk under target.

    Creates directories as needed and overwrites files. Entries already
    present under target that the tree does not mention are left alone;
    callers wanting a clean reconstruction clear target first.
    """
    target = Path(target)
    target.mkdir(parents=True, exist_ok=True)
    for name, value in tree.items():
        path = target / name
        if isinstance(value, Mapping):
            if path.exists() and not path.is_dir():
                path.unlink()
            decode_tree(value, path)
        else:
            if path.is_dir():
                raise IsADirectoryError(f"Cannot write file over directory: {path}")
            path.write_bytes(value)


# ── Wire format ───────────────────────────────────────────────────


def _tree_to_wire(tree: Mapping) -> dict:
    wire = {}
    for name, value in tree.items():
        if isinstance(value, Mapping):
            wire[name] = _tree_to_wire(value)
        else:
            wire[name] = base64.b64encode(value).decode("ascii")
    return wire


def _tree_from_wire(wire: Mapping) -> dict:
    tree = {}
    for name, value in wire.items():
        if isinstance(value, Mapping):
            tree[name] = _tree_from_wire(value)
        elif isinstance(value, str):
            tree[name] = base64.b64decode(value)
        else:
            raise ValueError(f"Invalid tree entry {name!r}: {type(value).__name__}")
    return tree


def tree_to_json(tree: Mapping) -> bytes:
    return json.dumps(_tree_to_wire(tree)).encode("utf-8")


def tree_from_json(data: bytes) -> dict:
    wire = json.loads(data.decode("utf-8"))
    if not isinstance(wire, dict):
        raise ValueError("Snapshot payload is not a directory tree")
    return _tree_from_wire(wire)


# ── Path access ───────────────────────────────────────────────────


def flatten_tree(tree: Mapping, prefix: str = "") -> dict[str, bytes]:
    """Flatten a tree into {"dir/file": bytes}."""
    result = {}
    for name, value in tree.items():
        full_path = f"{prefix}/{name}" if prefix else name
        if isinstance(value, Mapping):
            result.update(flatten_tree(value, full_path))
        else:
            result[full_path] = value
    return result


def unflatten(files: Mapping[str, bytes]) -> dict:
    """Inverse of flatten_tree."""
    tree: dict = {}
    for rel_path, content in files.items():
        put_file(tree, rel_path, content)
    return tree


def get_file(tree: Mapping, rel_path: str) -> bytes | None:
    """Return the file bytes at rel_path, or None if absent (or a directory)."""
    node = tree
    for part in normalize_path(rel_path).split("/"):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node if isinstance(node, bytes) else None


def put_file(tree: dict, rel_path: str, content: bytes) -> None:
    """Write file bytes at rel_path, creating intermediate directories."""
    parts = normalize_path(rel_path).split("/")
    node = tree
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = content


def remove_path(tree: dict, rel_path: str) -> bool:
    """
    Remove a file (or subtree) at rel_path. Returns False if absent.

    Directories left empty by the removal are pruned, matching what the
    patch engine does on disk.
    """
    parts = normalize_path(rel_path).split("/")
    trail = []
    node = tree
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            return False
        trail.append((node, part))
        node = child
    if parts[-1] not in node:
        return False
    del node[parts[-1]]
    for parent, name in reversed(trail):
        if parent[name]:
            break
        del parent[name]
    return True
