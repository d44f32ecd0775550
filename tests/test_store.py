"""VersionStore tests: lifecycle scenarios and per-operation edge cases."""

import json
import os
import socket
import time

import pytest

from apiver.catalog import VersionKind
from apiver.config import StoreConfig
from apiver.errors import (
    CorruptArtifactError,
    DuplicateVersionError,
    FileNotInVersionError,
    InvalidVersionNameError,
    NoCurrentVersionError,
    ReferentialIntegrityError,
    StoreLockedError,
    StoreUninitializedError,
    TargetNotEmptyError,
    VersionNotFoundError,
    WorkingFileNotFoundError,
)
from apiver.store import VersionStore
from apiver.tree import encode_directory, flatten_tree

USERS = "routes/users.js"
USERS_V1 = b"module.exports = function users() {\n  return 'v1';\n};\n"
USERS_V2 = b"module.exports = function users() {\n  return 'v2';\n};\n"


def _files(path):
    return flatten_tree(encode_directory(path))


def _new_with_edit(store, name, base, content=USERS_V2, message="edit"):
    store.create_from(name, base)
    (store.root / USERS).write_bytes(content)
    return store.commit(message)


class TestInitialize:
    def test_first_version_is_full(self, store):
        entry = store.entry("v1")
        assert entry.kind is VersionKind.FULL
        assert entry.snapshot == "v1.full.apiver"
        assert store.artifacts.exists(entry.snapshot)
        assert store.list().versions == ["v1"]
        assert store.current_version() == "v1"

    def test_layout(self, store):
        meta = store.meta_dir
        for name in ("config.json", "meta.json", "current-version", "snapshots", "patches", "hotfixes"):
            assert (meta / name).exists(), name
        config = json.loads((meta / "config.json").read_text())
        assert config["full_snapshot_interval"] == 5

    def test_snapshot_content(self, store):
        files = flatten_tree(store.resolve("v1"))
        assert files[USERS] == USERS_V1
        assert not any(p.startswith(".apiver") for p in files)

    def test_duplicate(self, store):
        with pytest.raises(DuplicateVersionError):
            store.initialize("v1")

    def test_invalid_name(self, project):
        with pytest.raises(InvalidVersionNameError):
            VersionStore(project).initialize("../evil")

    def test_second_independent_root(self, store):
        store.initialize("legacy")
        assert store.entry("legacy").kind is VersionKind.FULL
        assert store.entry("legacy").base is None

    def test_operations_need_catalog(self, project):
        s = VersionStore(project)
        with pytest.raises(StoreUninitializedError):
            s.list()
        with pytest.raises(StoreUninitializedError):
            s.create_from("v2", "v1")

    def test_find_walks_up(self, store):
        nested = store.root / "routes"
        assert VersionStore.find(nested).root == store.root

    def test_node_modules_and_git_excluded(self, project):
        (project / "node_modules" / "lib").mkdir(parents=True)
        (project / "node_modules" / "lib" / "index.js").write_text("dep")
        (project / ".git").mkdir()
        (project / ".git" / "HEAD").write_text("ref")
        s = VersionStore(project)
        s.initialize("v1")
        assert set(flatten_tree(s.resolve("v1"))) == {USERS, "package.json"}


class TestScenarios:
    def test_create_modify_commit(self, store):
        result = _new_with_edit(store, "v2", "v1")
        entry = store.entry("v2")
        assert entry.kind is VersionKind.PATCH
        assert entry.base == "v1"
        assert entry.patches == ["v2.1.patch.apiver"]
        assert result.artifact == "v2.1.patch.apiver"
        assert result.changes == 1
        assert entry.message == "edit"

        assert flatten_tree(store.resolve("v2"))[USERS] == USERS_V2
        assert flatten_tree(store.resolve("v1"))[USERS] == USERS_V1

    def test_create_loads_base_into_working_area(self, store):
        (store.root / USERS).write_bytes(b"uncommitted scribble\n")
        store.create_from("v2", "v1")
        assert (store.root / USERS).read_bytes() == USERS_V1
        assert store.current_version() == "v2"

    def test_hotfix_then_switch(self, store):
        (store.root / "fixme.txt").write_text("patched in production\n")
        artifact = store.hotfix("v1", "fixme.txt")
        assert artifact == "v1.1.hotfix.apiver"
        assert store.hotfixes("v1") == [artifact]

        (store.root / "fixme.txt").unlink()
        store.switch("v1")
        assert (store.root / "fixme.txt").read_text() == "patched in production\n"

    def test_delete_guarded_by_dependents(self, store):
        store.create_from("v3", "v1")
        store.create_from("v4", "v3")
        with pytest.raises(ReferentialIntegrityError) as exc:
            store.delete("v3")
        assert exc.value.dependents == ["v4"]
        assert "v3" in store.list().versions

    def test_diff_single_modified_file(self, store):
        _new_with_edit(store, "v2", "v1")
        diffs = store.diff("v1", "v2")
        assert len(diffs) == 1
        d = diffs[0]
        assert d.path == USERS
        assert d.status == "modified"
        assert d.additions > 0 and d.deletions > 0
        assert "-  return 'v1';" in d.diff


class TestCommit:
    def test_incremental_patches(self, store):
        _new_with_edit(store, "v2", "v1")
        (store.root / "routes" / "posts.js").write_text("posts\n")
        result = store.commit("add posts")
        assert result.artifact == "v2.2.patch.apiver"
        # Second patch only carries the new file
        _, patch = store.show_patch(result.artifact)
        assert [c.file for c in patch.changes] == ["routes/posts.js"]
        files = flatten_tree(store.resolve("v2"))
        assert files[USERS] == USERS_V2
        assert files["routes/posts.js"] == b"posts\n"

    def test_records_deletions(self, store):
        store.create_from("v2", "v1")
        (store.root / "package.json").unlink()
        result = store.commit()
        assert result.deletes == 1
        assert "package.json" not in flatten_tree(store.resolve("v2"))

    def test_noop_commit_writes_empty_patch(self, store):
        store.create_from("v2", "v1")
        result = store.commit()
        assert result.changes == 0 and result.deletes == 0
        _, patch = store.show_patch(result.artifact)
        assert patch.is_empty

    def test_full_version_rewrites_snapshot(self, store):
        (store.root / USERS).write_bytes(USERS_V2)
        result = store.commit("rewrite")
        assert result.kind is VersionKind.FULL
        assert result.artifact == "v1.full.apiver"
        assert flatten_tree(store.resolve("v1"))[USERS] == USERS_V2

    def test_without_current_version(self, store):
        store.pointer_path.unlink()
        with pytest.raises(NoCurrentVersionError):
            store.commit()

    def test_folds_hotfixes(self, store):
        store.create_from("v2", "v1")
        (store.root / USERS).write_bytes(USERS_V2)
        hotfix = store.hotfix("v2", USERS)
        assert hotfix is not None

        (store.root / "extra.txt").write_text("extra\n")
        result = store.commit("fold")
        assert result.folded_hotfixes == [hotfix]
        assert store.hotfixes("v2") == []
        assert not store.artifacts.exists(hotfix)
        files = flatten_tree(store.resolve("v2"))
        assert files[USERS] == USERS_V2
        assert files["extra.txt"] == b"extra\n"

    def test_every_nth_version_is_full(self, store):
        # v1 is ordinal 1, so the 4th derived version is the 5th created
        for name in ("v2", "v3", "v4", "v5"):
            store.create_from(name, "v1")
        assert [store.entry(n).kind for n in ("v2", "v3", "v4")] == [VersionKind.PATCH] * 3
        v5 = store.entry("v5")
        assert v5.kind is VersionKind.FULL
        assert v5.base == "v1"
        assert store.artifacts.exists(v5.snapshot)
        assert store.resolve("v5") == store.resolve("v1")

        (store.root / USERS).write_bytes(USERS_V2)
        assert store.commit().kind is VersionKind.FULL

    def test_interval_disabled(self, project):
        s = VersionStore(project, config=StoreConfig(full_snapshot_interval=0))
        s.initialize("v1")
        for i in range(2, 8):
            s.create_from(f"v{i}", "v1")
        assert all(s.entry(f"v{i}").kind is VersionKind.PATCH for i in range(2, 8))

    def test_long_chain(self, store):
        previous = "v1"
        for i in range(2, 5):
            name = f"v{i}"
            _new_with_edit(store, name, previous, content=f"version {i}\n".encode())
            previous = name
        assert store.resolve("v4") == store.resolve("v4")
        assert flatten_tree(store.resolve("v3"))[USERS] == b"version 3\n"
        assert flatten_tree(store.resolve("v4"))[USERS] == b"version 4\n"


class TestSwitch:
    def test_replaces_working_area(self, store):
        _new_with_edit(store, "v2", "v1")
        (store.root / "stray.txt").write_text("not versioned")
        store.switch("v1")
        assert _files(store.root) == flatten_tree(store.resolve("v1"))
        assert store.current_version() == "v1"

    def test_keeps_excluded_entries(self, store):
        (store.root / "node_modules").mkdir()
        (store.root / "node_modules" / "dep.js").write_text("dep")
        store.switch("v1")
        assert (store.root / "node_modules" / "dep.js").exists()
        assert (store.root / ".apiver" / "meta.json").exists()

    def test_to_target_dir(self, store, tmp_path):
        _new_with_edit(store, "v2", "v1")
        out = tmp_path / "export"
        store.switch("v1", target_dir=out)
        assert (out / USERS).read_bytes() == USERS_V1
        assert store.current_version() == "v2"
        assert (store.root / USERS).read_bytes() == USERS_V2

    def test_refuses_target_dir_over_store(self, store):
        for target in (store.root.parent, store.meta_dir, store.artifacts.snapshots_dir):
            with pytest.raises(ValueError, match="overwrite the store"):
                store.switch("v1", target_dir=target)
        assert store.catalog_path.exists()
        assert store.resolve("v1")

    def test_unknown(self, store):
        with pytest.raises(VersionNotFoundError):
            store.switch("v9")


class TestCopy:
    def test_copy_into_empty_version(self, store):
        _new_with_edit(store, "v2", "v1")
        store.create_from("v3", "v1")
        entry = store.copy("v2", "v3")
        assert entry.kind is VersionKind.FULL
        assert entry.base is None
        assert entry.patches == []
        assert store.resolve("v3") == store.resolve("v2")
        assert store.current_version() == "v3"
        assert (store.root / USERS).read_bytes() == USERS_V2

    def test_refuses_non_empty_target(self, store):
        _new_with_edit(store, "v2", "v1")
        with pytest.raises(TargetNotEmptyError):
            store.copy("v1", "v2")
        assert store.entry("v2").kind is VersionKind.PATCH

    def test_force_overwrites_and_removes_old_artifacts(self, store):
        _new_with_edit(store, "v2", "v1")
        (store.root / USERS).write_bytes(b"hotfixed\n")
        hotfix = store.hotfix("v2", USERS)
        store.copy("v1", "v2", force=True)
        assert store.resolve("v2") == store.resolve("v1")
        assert not store.artifacts.exists("v2.1.patch.apiver")
        assert not store.artifacts.exists(hotfix)
        assert store.hotfixes("v2") == []

    def test_refuses_target_with_dependents(self, store):
        store.create_from("v3", "v1")
        _new_with_edit(store, "v4", "v3")
        before = store.resolve("v4")
        _new_with_edit(store, "v2", "v1", content=b"something else\n")
        for force in (False, True):
            with pytest.raises(ReferentialIntegrityError) as exc:
                store.copy("v2", "v3", force=force)
            assert exc.value.dependents == ["v4"]
        assert store.entry("v3").kind is VersionKind.PATCH
        assert store.resolve("v4") == before
        assert store.current_version() == "v2"

    def test_requires_both_versions(self, store):
        with pytest.raises(VersionNotFoundError):
            store.copy("v1", "v9")
        with pytest.raises(VersionNotFoundError):
            store.copy("v9", "v1")


class TestDelete:
    def test_removes_entry_and_artifacts(self, store):
        _new_with_edit(store, "v2", "v1")
        removed = store.delete("v2")
        assert removed == ["v2.1.patch.apiver"]
        assert "v2" not in store.list().versions
        assert not store.artifacts.exists("v2.1.patch.apiver")
        assert store.current_version() is None

    def test_leaf_first_then_base(self, store):
        store.create_from("v2", "v1")
        store.delete("v2")
        store.delete("v1")
        assert store.list().versions == []

    def test_unknown(self, store):
        with pytest.raises(VersionNotFoundError):
            store.delete("v9")


class TestInspectAndHotfix:
    def test_inspect(self, store):
        _new_with_edit(store, "v2", "v1")
        assert store.inspect("v1", USERS) == USERS_V1
        assert store.inspect("v2", USERS) == USERS_V2

    def test_inspect_missing_file(self, store):
        with pytest.raises(FileNotInVersionError) as exc:
            store.inspect("v1", "nope.js")
        assert exc.value.path == "nope.js"

    def test_hotfix_unchanged_file_is_noop(self, store, caplog):
        with caplog.at_level("INFO", logger="apiver.store"):
            assert store.hotfix("v1", USERS) is None
        assert store.hotfixes("v1") == []
        assert "No changes" in caplog.text

    def test_hotfix_missing_working_file(self, store):
        with pytest.raises(WorkingFileNotFoundError):
            store.hotfix("v1", "ghost.js")

    def test_hotfixes_accumulate_in_order(self, store):
        (store.root / USERS).write_bytes(USERS_V1 + b"// fix 1\n")
        first = store.hotfix("v1", USERS)
        (store.root / USERS).write_bytes(USERS_V1 + b"// fix 1\n// fix 2\n")
        second = store.hotfix("v1", USERS)
        assert store.hotfixes("v1") == [first, second]
        assert store.inspect("v1", USERS).endswith(b"// fix 1\n// fix 2\n")

    def test_hotfix_does_not_leak_into_dependents(self, store):
        _new_with_edit(store, "v2", "v1")
        store.switch("v1")
        (store.root / USERS).write_bytes(USERS_V1 + b"// urgent\n")
        store.hotfix("v1", USERS)
        assert store.inspect("v2", USERS) == USERS_V2


class TestShowPatchCleanupVerify:
    def test_show_patch(self, store):
        _new_with_edit(store, "v2", "v1")
        artifact_id, patch = store.show_patch("v2.1")
        assert artifact_id == "v2.1.patch.apiver"
        assert patch.changes[0].file == USERS

    def test_cleanup_removes_debris(self, store):
        (store.scratch_root / "commit-v2-abandoned").mkdir(parents=True)
        store.artifacts.path_for("ghost.1.patch.apiver").write_bytes(b"junk")
        report = store.cleanup()
        assert report.scratch_dirs == ["commit-v2-abandoned"]
        assert report.orphaned_artifacts == ["ghost.1.patch.apiver"]
        assert store.artifacts.exists("v1.full.apiver")
        assert store.cleanup().empty

    def test_cleanup_reclaims_stale_lock(self, store):
        store.lock_path.mkdir()
        (store.lock_path / "owner.json").write_text(json.dumps({
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": time.time() - 3600,
        }))
        assert store.cleanup().stale_lock is True
        assert not store.lock_path.exists()

    def test_verify_clean_store(self, store):
        _new_with_edit(store, "v2", "v1")
        assert store.verify() == []

    def test_verify_reports_missing_artifact(self, store):
        _new_with_edit(store, "v2", "v1")
        store.artifacts.delete("v2.1.patch.apiver")
        problems = store.verify()
        assert any("v2.1.patch.apiver" in p for p in problems)


class TestLocking:
    def test_live_lock_blocks_mutation(self, store):
        store.lock_path.mkdir()
        (store.lock_path / "owner.json").write_text(json.dumps({
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": time.time(),
        }))
        with pytest.raises(StoreLockedError):
            store.create_from("v2", "v1")
        assert "v2" not in store.list().versions

    def test_lock_released_after_error(self, store):
        with pytest.raises(VersionNotFoundError):
            store.create_from("v2", "missing")
        assert not store.lock_path.exists()
        store.create_from("v2", "v1")

    def test_scratch_dirs_removed(self, store):
        _new_with_edit(store, "v2", "v1")
        store.diff("v1", "v2")
        assert list(store.scratch_root.iterdir()) == []

    def test_scratch_dirs_removed_after_error(self, store):
        _new_with_edit(store, "v2", "v1")
        store.artifacts.path_for("v2.1.patch.apiver").write_bytes(b"junk" * 10)
        with pytest.raises(CorruptArtifactError):
            store.commit()
        with pytest.raises(CorruptArtifactError):
            store.diff("v1", "v2")
        assert list(store.scratch_root.iterdir()) == []
        assert not store.lock_path.exists()
