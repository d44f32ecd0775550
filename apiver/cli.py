"""
apiver CLI

Manage versioned snapshots of an API's source tree from the shell.
Every command outputs structured JSON when --json is passed; human
readable output is the default.

Store detection:
    Commands look for a .apiver directory in the current directory
    (or --path) and its parents, the same way git finds .git.

Usage:
    apiver init VERSION
    apiver new VERSION from BASE
    apiver switch VERSION
    apiver commit [-m MESSAGE]
    apiver inspect VERSION PATH [--open]
    apiver hotfix VERSION PATH
    apiver copy SOURCE to TARGET [--force]
    apiver delete VERSION
    apiver diff VERSION_A VERSION_B
    apiver show patch ID
    apiver list
    apiver cleanup
    apiver verify

The encryption secret is read from $APIVER_KEY (at least 32 characters).
"""

import argparse
import base64
import difflib
import json
import logging
import os
import subprocess
import sys
import tempfile
from datetime import datetime
from pathlib import Path

import apiver as _apiver_pkg

from .errors import StoreUninitializedError
from .store import VersionStore


def open_store(args) -> VersionStore:
    return VersionStore.find(Path(args.path or "."))


def format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


def get_verbosity(args) -> int:
    """Return verbosity level: 0=quiet, 1=normal, 2=verbose."""
    if getattr(args, "json", False):
        return 1
    if getattr(args, "verbose", False):
        return 2
    if getattr(args, "quiet", False):
        return 0
    return 1


def configure_logging(args):
    level = logging.WARNING
    if getattr(args, "verbose", False):
        level = logging.INFO
    elif getattr(args, "quiet", False):
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _write_bytes(content: bytes):
    sys.stdout.flush()
    sys.stdout.buffer.write(content)
    if content and not content.endswith(b"\n"):
        sys.stdout.buffer.write(b"\n")
    sys.stdout.buffer.flush()


# ── Commands ──────────────────────────────────────────────────


def cmd_init(args):
    v = get_verbosity(args)
    store = VersionStore(Path(args.path or "."))
    entry = store.initialize(args.version)
    if args.json:
        print_json({"version": entry.name, "type": entry.kind.value, "snapshot": entry.snapshot, "root": str(store.root)})
    elif v > 0:
        print(f"Initialized apiver store in {store.meta_dir}")
        print(f"  Version {entry.name} snapshotted as {entry.snapshot}")


def cmd_new(args):
    v = get_verbosity(args)
    store = open_store(args)
    entry = store.create_from(args.version, args.base)
    if args.json:
        print_json({"version": entry.name, "base": entry.base, "type": entry.kind.value})
    elif v > 0:
        print(f"Created version {entry.name} from {entry.base} ({entry.kind.value})")
        print(f"  Working area now holds {entry.name}. Edit files, then run 'apiver commit'.")


def cmd_switch(args):
    v = get_verbosity(args)
    store = open_store(args)
    store.switch(args.version)
    if args.json:
        print_json({"current": args.version})
    elif v > 0:
        print(f"Switched to version {args.version}")


def cmd_commit(args):
    v = get_verbosity(args)
    store = open_store(args)
    result = store.commit(args.message or "")
    if args.json:
        print_json(result.to_dict())
        return
    if v == 0:
        return
    if result.kind.value == "full":
        print(f"Committed {result.version}: snapshot {result.artifact} ({result.changes} files)")
    else:
        print(
            f"Committed {result.version}: patch {result.artifact} "
            f"({result.changes} changed, {result.deletes} deleted)"
        )
    if result.folded_hotfixes:
        print(f"  Folded {len(result.folded_hotfixes)} hotfix(es) into the commit")


def cmd_inspect(args):
    store = open_store(args)
    content = store.inspect(args.version, args.file_path)

    if args.open:
        editor = os.environ.get("EDITOR", "nano")
        suffix = Path(args.file_path).suffix
        fd, tmp_path = tempfile.mkstemp(prefix=f"apiver-{args.version}-", suffix=suffix)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            subprocess.run([editor, tmp_path], check=False)
        finally:
            os.unlink(tmp_path)
        return

    if args.json:
        try:
            print_json({"version": args.version, "path": args.file_path, "content": content.decode("utf-8")})
        except UnicodeDecodeError:
            print_json({
                "version": args.version,
                "path": args.file_path,
                "content_base64": base64.b64encode(content).decode("ascii"),
            })
    else:
        _write_bytes(content)


def cmd_hotfix(args):
    v = get_verbosity(args)
    store = open_store(args)
    artifact = store.hotfix(args.version, args.file_path)
    if args.json:
        print_json({"version": args.version, "path": args.file_path, "hotfix": artifact})
    elif v > 0:
        if artifact is None:
            print(f"No changes made to {args.file_path} in {args.version}")
        else:
            print(f"Hotfix {artifact} applied to {args.version} for {args.file_path}")


def cmd_copy(args):
    v = get_verbosity(args)
    store = open_store(args)
    entry = store.copy(args.source, args.target, force=args.force)
    if args.json:
        print_json({"source": args.source, "target": entry.name, "snapshot": entry.snapshot})
    elif v > 0:
        print(f"Copied {args.source} to {entry.name}")
        print(f"  Working area now holds {entry.name}.")


def cmd_delete(args):
    v = get_verbosity(args)
    store = open_store(args)
    removed = store.delete(args.version)
    if args.json:
        print_json({"deleted": args.version, "artifacts": removed})
    elif v > 0:
        print(f"Deleted version {args.version} ({len(removed)} artifacts removed)")


def cmd_diff(args):
    v = get_verbosity(args)
    store = open_store(args)
    diffs = store.diff(args.version_a, args.version_b)

    if args.json:
        print_json({
            "a": args.version_a,
            "b": args.version_b,
            "files": [d.to_dict() for d in diffs],
        })
        return

    print(f"Diff: {args.version_a} → {args.version_b}\n")
    if not diffs:
        print("  No differences.")
        return

    markers = {"added": "+", "removed": "-", "modified": "~"}
    for d in diffs:
        if d.diff is None:
            print(f"  {markers[d.status]} {d.path} (binary)")
        else:
            print(f"  {markers[d.status]} {d.path} (+{d.additions} -{d.deletions})")
        if v >= 2 and d.diff:
            for line in d.diff.splitlines():
                print(f"    {line}")

    additions = sum(d.additions for d in diffs)
    deletions = sum(d.deletions for d in diffs)
    print(f"\n  {len(diffs)} files changed, {additions} insertions(+), {deletions} deletions(-)")


def cmd_show_patch(args):
    store = open_store(args)
    artifact_id, patch = store.show_patch(args.patch_id)

    if args.json:
        data = patch.to_dict()
        data["id"] = artifact_id
        print_json(data)
        return

    print(f"\nPatch: {artifact_id}\n")
    if patch.changes:
        print("Changes:")
        for change in patch.changes:
            print(f"  File: {change.file}")
            print(f"  Diff:\n{change.diff}")
    if patch.deletes:
        print("Deleted Files:")
        for path in patch.deletes:
            print(f"  {path}")
    if patch.is_empty:
        print("  (empty patch)")


def cmd_list(args):
    store = open_store(args)
    listing = store.list()

    if args.json:
        print_json(listing.to_dict())
        return

    if not listing.versions:
        print("No versions found.")
        return

    print("Available API Versions:")
    for name in listing.versions:
        if name == listing.current:
            print(f"* {name} (active)")
        else:
            print(f"  {name}")


def cmd_cleanup(args):
    v = get_verbosity(args)
    store = open_store(args)
    report = store.cleanup()
    if args.json:
        print_json(report.to_dict())
    elif v > 0:
        if report.empty:
            print("Nothing to clean up.")
            return
        if report.stale_lock:
            print("  Removed stale lock")
        if report.scratch_dirs:
            print(f"  Removed {len(report.scratch_dirs)} scratch directories")
        for artifact_id in report.orphaned_artifacts:
            print(f"  Removed orphaned artifact {artifact_id}")


def cmd_verify(args):
    store = open_store(args)
    problems = store.verify()
    if args.json:
        print_json({"ok": not problems, "problems": problems})
    elif not problems:
        print("Store is consistent.")
    else:
        print(f"Found {len(problems)} problem(s):")
        for problem in problems:
            print(f"  {problem}")
    if problems:
        sys.exit(1)


# ── Parser ────────────────────────────────────────────────────


COMMAND_ALIASES = {
    "ls": "list",
    "rm": "delete",
    "checkout": "switch",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="apiver",
        description="apiver: versioned snapshots of an API source tree",
    )
    ver = _apiver_pkg.__version__
    parser.add_argument("--version", "-V", action="version", version=f"apiver {ver}")
    parser.add_argument("--path", "-C", default=".", help="Project path")
    parser.add_argument("--json", "-j", action="store_true", help="JSON output")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Quiet output")

    sub = parser.add_subparsers(dest="command")

    # init
    p = sub.add_parser("init", help="Snapshot the working area as the first version")
    p.add_argument("version")
    p.set_defaults(func=cmd_init)

    # new
    p = sub.add_parser("new", help="Create a new version based on another")
    p.add_argument("version")
    p.add_argument("from_kw", metavar="from", choices=["from"])
    p.add_argument("base")
    p.set_defaults(func=cmd_new)

    # switch
    p = sub.add_parser("switch", help="Load a version into the working area")
    p.add_argument("version")
    p.set_defaults(func=cmd_switch)

    # commit
    p = sub.add_parser("commit", help="Record working-area changes in the current version")
    p.add_argument("--message", "-m", default="", help="Commit message")
    p.set_defaults(func=cmd_commit)

    # inspect
    p = sub.add_parser("inspect", help="Print one file of a version")
    p.add_argument("version")
    p.add_argument("file_path")
    p.add_argument("--open", action="store_true", help="Open in $EDITOR instead of printing")
    p.set_defaults(func=cmd_inspect)

    # hotfix
    p = sub.add_parser("hotfix", help="Record the working copy of one file as a hotfix")
    p.add_argument("version")
    p.add_argument("file_path")
    p.set_defaults(func=cmd_hotfix)

    # copy
    p = sub.add_parser("copy", help="Replace one version's content with another's")
    p.add_argument("source")
    p.add_argument("to_kw", metavar="to", choices=["to"])
    p.add_argument("target")
    p.add_argument("--force", "-f", action="store_true", help="Overwrite a target that has content")
    p.set_defaults(func=cmd_copy)

    # delete
    p = sub.add_parser("delete", help="Delete a version nothing depends on")
    p.add_argument("version")
    p.set_defaults(func=cmd_delete)

    # diff
    p = sub.add_parser("diff", help="Compare two versions")
    p.add_argument("version_a")
    p.add_argument("version_b")
    p.set_defaults(func=cmd_diff)

    # show patch
    show = sub.add_parser("show", help="Show stored artifacts")
    show_sub = show.add_subparsers(dest="show_command")
    p = show_sub.add_parser("patch", help="Decode a patch or hotfix")
    p.add_argument("patch_id")
    p.set_defaults(func=cmd_show_patch)

    # list
    p = sub.add_parser("list", help="List versions")
    p.set_defaults(func=cmd_list)

    # cleanup
    p = sub.add_parser("cleanup", help="Remove scratch directories, stale locks and orphaned artifacts")
    p.set_defaults(func=cmd_cleanup)

    # verify
    p = sub.add_parser("verify", help="Check every version chain and artifact")
    p.set_defaults(func=cmd_verify)

    return parser


def _error_hint(msg: str) -> str | None:
    """Return a hint for common error messages, or None."""
    lower = msg.lower()
    if "version not found" in lower:
        return "Hint: Use 'apiver list' to see available versions."
    if "patch with id" in lower:
        return "Hint: Patch ids look like '<version>.<n>.patch.apiver'."
    if "is the base of" in lower:
        return "Hint: Delete or copy over the dependent versions first."
    if "decryption failed" in lower:
        return "Hint: Check that APIVER_KEY matches the key the store was created with."
    return None


_KNOWN_COMMANDS = [
    "init",
    "new",
    "switch",
    "commit",
    "inspect",
    "hotfix",
    "copy",
    "delete",
    "diff",
    "show",
    "list",
    "cleanup",
    "verify",
]


def main():
    # Resolve command aliases before parsing
    if len(sys.argv) > 1 and sys.argv[1] in COMMAND_ALIASES:
        sys.argv[1] = COMMAND_ALIASES[sys.argv[1]]

    # Check for "did you mean?" before argparse (which exits with code 2)
    if len(sys.argv) > 1 and not sys.argv[1].startswith("-"):
        attempted = sys.argv[1]
        all_names = _KNOWN_COMMANDS + list(COMMAND_ALIASES.keys())
        if attempted not in all_names:
            matches = difflib.get_close_matches(attempted, all_names, n=3, cutoff=0.6)
            if matches:
                print(f"Unknown command: '{attempted}'", file=sys.stderr)
                print(f"  Did you mean: {', '.join(matches)}?", file=sys.stderr)
                sys.exit(1)

    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(args)

    if hasattr(args, "func"):
        try:
            args.func(args)
        except StoreUninitializedError as e:
            if getattr(args, "json", False):
                print_json({"error": str(e)})
            else:
                print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        except Exception as e:
            msg = str(e)
            if getattr(args, "json", False):
                print_json({"error": msg})
            else:
                print(f"Error: {msg}", file=sys.stderr)
                hint = _error_hint(msg)
                if hint:
                    print(f"  {hint}", file=sys.stderr)
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
