"""
Patch Engine

A Patch describes how to turn one directory state into another:

    {"changes": [{"file": "routes/users.js", "diff": "<unified diff>"}],
     "deletes": ["old/file.txt"]}

The same type is used for incremental version patches and for
out-of-band hotfixes; only where they are stored differs.

Diffs are line-oriented unified diffs produced with difflib. difflib
itself silently drops the distinction between "last line ends with a
newline" and "last line doesn't", so we emit the standard
``\\ No newline at end of file`` marker after such lines, which makes
every diff exactly reversible: apply(diff(A, B), A) == B.

Content is treated as UTF-8 text with surrogateescape, so bytes that
are not valid UTF-8 still round-trip through the JSON artifact.
"""

import difflib
import json
import logging
import re
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import PatchApplyError
from .tree import (
    DEFAULT_RULES,
    MARKER_NAME,
    ExclusionRules,
    encode_directory,
    flatten_tree,
    get_file,
    normalize_path,
    put_file,
    remove_path,
)

logger = logging.getLogger(__name__)

NO_NEWLINE_MARKER = "\\ No newline at end of file"

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


@dataclass
class FileChange:
    file: str
    diff: str

    def to_dict(self) -> dict:
        return {"file": self.file, "diff": self.diff}


@dataclass
class Patch:
    """Per-file unified diffs plus a list of deleted paths."""

    changes: list[FileChange] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.changes and not self.deletes

    @property
    def paths(self) -> list[str]:
        return [c.file for c in self.changes] + list(self.deletes)

    def to_dict(self) -> dict:
        return {
            "changes": [c.to_dict() for c in self.changes],
            "deletes": list(self.deletes),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Patch":
        return cls(
            changes=[FileChange(file=c["file"], diff=c["diff"]) for c in d.get("changes", [])],
            deletes=list(d.get("deletes", [])),
        )

    def to_json(self) -> bytes:
        # ensure_ascii keeps lone surrogates (undecodable bytes) as \\udcXX escapes
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> "Patch":
        d = json.loads(data.decode("utf-8"))
        if not isinstance(d, dict):
            raise ValueError("Patch payload is not an object")
        return cls.from_dict(d)


# ── Text helpers ──────────────────────────────────────────────────


def to_text(content: bytes) -> str:
    return content.decode("utf-8", "surrogateescape")


def to_bytes(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def split_lines(text: str) -> list[str]:
    """Split on '\\n' only, keeping terminators (str.splitlines also splits on \\r etc.)."""
    lines = text.split("\n")
    result = [line + "\n" for line in lines[:-1]]
    if lines[-1]:
        result.append(lines[-1])
    return result


# ── Unified diff ──────────────────────────────────────────────────


def unified_diff(old: str, new: str, path: str) -> str:
    """Unified diff from old to new, empty string if they are equal."""
    out = []
    for line in difflib.unified_diff(
        split_lines(old), split_lines(new), fromfile=path, tofile=path
    ):
        out.append(line)
        if not line.endswith("\n"):
            out.append("\n" + NO_NEWLINE_MARKER + "\n")
    return "".join(out)


def count_changes(diff_text: str) -> tuple[int, int]:
    """Return (additions, deletions) line counts for a unified diff."""
    additions = deletions = 0
    for hunk in _parse_hunks(diff_text, path="<diff>"):
        for tag, _ in hunk.lines:
            if tag == "+":
                additions += 1
            elif tag == "-":
                deletions += 1
    return additions, deletions


@dataclass
class _Hunk:
    old_start: int
    old_len: int
    new_start: int
    new_len: int
    lines: list = field(default_factory=list)  # (tag, text) pairs


def _parse_hunks(diff_text: str, path: str) -> list[_Hunk]:
    hunks = []
    hunk = None
    old_left = new_left = 0

    for raw in split_lines(diff_text):
        body = raw[:-1] if raw.endswith("\n") else raw

        if body.startswith("\\"):
            # The previous line had no trailing newline
            if hunk is None or not hunk.lines:
                raise PatchApplyError(path, "newline marker outside a hunk")
            tag, text = hunk.lines[-1]
            if text.endswith("\n"):
                hunk.lines[-1] = (tag, text[:-1])
            continue

        if hunk is not None and (old_left > 0 or new_left > 0):
            tag = body[:1] or " "
            if tag == " ":
                old_left -= 1
                new_left -= 1
            elif tag == "-":
                old_left -= 1
            elif tag == "+":
                new_left -= 1
            else:
                raise PatchApplyError(path, f"malformed hunk line {body!r}")
            hunk.lines.append((tag, body[1:] + "\n"))
            continue

        m = _HUNK_HEADER.match(body)
        if m:
            hunk = _Hunk(
                old_start=int(m.group(1)),
                old_len=int(m.group(2)) if m.group(2) is not None else 1,
                new_start=int(m.group(3)),
                new_len=int(m.group(4)) if m.group(4) is not None else 1,
            )
            hunks.append(hunk)
            old_left, new_left = hunk.old_len, hunk.new_len
        elif body.startswith(("---", "+++", "Index:", "====")) or not body:
            continue
        else:
            raise PatchApplyError(path, f"unexpected line in diff {body!r}")

    if hunk is not None and (old_left > 0 or new_left > 0):
        raise PatchApplyError(path, "diff is truncated")
    return hunks


def _locate(lines: list[str], old: list[str], expected: int, lower: int) -> int | None:
    """Find where old occurs in lines, searching outward from expected."""
    highest = len(lines) - len(old)

    def matches(at: int) -> bool:
        return lower <= at <= highest and lines[at:at + len(old)] == old

    if matches(expected):
        return expected
    for distance in range(1, len(lines) + 1):
        if matches(expected - distance):
            return expected - distance
        if matches(expected + distance):
            return expected + distance
        if expected - distance < lower and expected + distance > highest:
            break
    return None


def apply_unified_diff(text: str, diff_text: str, path: str = "<text>") -> str:
    """
    Apply a unified diff to text and return the result.

    Context and removed lines must match exactly; a hunk may be found at
    a shifted position (other hunks of the same file added or removed
    lines above it). Anything else raises PatchApplyError.
    """
    hunks = _parse_hunks(diff_text, path)
    lines = split_lines(text)
    result: list[str] = []
    pos = 0
    offset = 0

    for hunk in hunks:
        old = [t for tag, t in hunk.lines if tag in (" ", "-")]
        new = [t for tag, t in hunk.lines if tag in (" ", "+")]

        if hunk.old_len == 0 and hunk.old_start == 0:
            # Diff against an empty file
            if lines:
                raise PatchApplyError(path, "diff creates the file but it already has content")
            start = 0
        else:
            expected = (hunk.old_start - 1 if hunk.old_len else hunk.old_start) + offset
            start = _locate(lines, old, expected, pos)
            if start is None:
                raise PatchApplyError(
                    path,
                    f"hunk @@ -{hunk.old_start},{hunk.old_len} "
                    f"+{hunk.new_start},{hunk.new_len} @@ does not match current content",
                )
            offset = start - (hunk.old_start - 1 if hunk.old_len else hunk.old_start)

        result.extend(lines[pos:start])
        result.extend(new)
        pos = start + len(old)

    result.extend(lines[pos:])
    return "".join(result)


# ── Tree / directory diff ─────────────────────────────────────────


def _as_files(source, rules: ExclusionRules) -> dict[str, bytes]:
    """Flatten a directory, tree, flat mapping or None into {path: bytes}."""
    if source is None:
        return {}
    if isinstance(source, (str, Path)):
        source = Path(source)
        if not source.exists():
            return {}
        files = flatten_tree(encode_directory(source, rules))
    elif isinstance(source, Mapping):
        files = flatten_tree(source)
    else:
        raise TypeError(f"Cannot diff {type(source).__name__}")
    return {p: c for p, c in files.items() if not rules.excludes_path(p)}


def diff(base, new, rules: ExclusionRules | None = None) -> Patch:
    """
    Compute the patch that turns base into new.

    Both sides may be a directory path, an in-memory tree, or None
    (empty). Paths identical on both sides produce no entry, so diffing
    a state against itself gives an empty patch.
    """
    rules = rules or DEFAULT_RULES
    base_files = _as_files(base, rules)
    new_files = _as_files(new, rules)

    patch = Patch()
    for path in sorted(base_files):
        if path == MARKER_NAME:
            continue
        if path not in new_files:
            patch.deletes.append(path)

    for path in sorted(new_files):
        if path == MARKER_NAME:
            continue
        old_content = base_files.get(path, b"")
        new_content = new_files[path]
        if path in base_files and old_content == new_content:
            continue
        text = unified_diff(to_text(old_content), to_text(new_content), path)
        patch.changes.append(FileChange(file=path, diff=text))

    logger.debug(
        "Computed patch: %d changes, %d deletes", len(patch.changes), len(patch.deletes)
    )
    return patch


# ── Applying ──────────────────────────────────────────────────────


def _prune_empty_parents(path: Path, stop_at: Path):
    current = path.parent
    while current != stop_at and current.is_dir() and not any(current.iterdir()):
        current.rmdir()
        current = current.parent


def _apply_to_directory(root: Path, patch: Patch):
    for rel in patch.deletes:
        rel = normalize_path(rel)
        if rel == MARKER_NAME:
            continue
        target = root / rel
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()
        else:
            continue
        _prune_empty_parents(target, root)

    for change in patch.changes:
        rel = normalize_path(change.file)
        if rel == MARKER_NAME:
            continue
        target = root / rel
        if target.is_dir():
            raise PatchApplyError(rel, "path is a directory")
        current = target.read_bytes() if target.exists() else b""
        updated = apply_unified_diff(to_text(current), change.diff, rel)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(to_bytes(updated))


def _apply_to_tree(tree: dict, patch: Patch):
    for rel in patch.deletes:
        rel = normalize_path(rel)
        if rel == MARKER_NAME:
            continue
        remove_path(tree, rel)

    for change in patch.changes:
        rel = normalize_path(change.file)
        if rel == MARKER_NAME:
            continue
        current = get_file(tree, rel) or b""
        updated = apply_unified_diff(to_text(current), change.diff, rel)
        put_file(tree, rel, to_bytes(updated))


def apply(target, patch: Patch) -> None:
    """
    Apply a patch in place to a directory (Path) or an in-memory tree.

    Deletes run first and ignore paths that are already gone. Each
    change is applied against the file's current content (empty if the
    file is absent); a diff that does not apply raises PatchApplyError
    naming the file.
    """
    if isinstance(target, (str, Path)):
        _apply_to_directory(Path(target), patch)
    elif isinstance(target, dict):
        _apply_to_tree(target, patch)
    else:
        raise TypeError(f"Cannot apply a patch to {type(target).__name__}")
