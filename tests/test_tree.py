"""Directory codec tests."""

import pytest

from apiver.tree import (
    DEFAULT_RULES,
    ExclusionRules,
    decode_tree,
    encode_directory,
    flatten_tree,
    get_file,
    normalize_path,
    put_file,
    remove_path,
    tree_from_json,
    tree_to_json,
    unflatten,
)


@pytest.fixture
def source(tmp_path):
    root = tmp_path / "src"
    (root / "routes" / "admin").mkdir(parents=True)
    (root / "routes" / "users.js").write_text("users\n")
    (root / "routes" / "admin" / "index.js").write_text("admin\n")
    (root / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00")
    (root / "empty.txt").write_bytes(b"")
    return root


class TestEncodeDecode:
    def test_round_trip(self, source, tmp_path):
        tree = encode_directory(source)
        target = tmp_path / "out"
        decode_tree(tree, target)
        assert encode_directory(target) == tree
        assert (target / "logo.png").read_bytes() == b"\x89PNG\r\n\x1a\n\x00\x00"

    def test_nested_structure(self, source):
        tree = encode_directory(source)
        assert tree["routes"]["admin"]["index.js"] == b"admin\n"
        assert tree["empty.txt"] == b""

    def test_default_exclusions(self, source):
        (source / ".apiver").mkdir()
        (source / ".apiver" / "meta.json").write_text("{}")
        (source / ".version").write_text("v1")
        (source / "0").write_text("scratch")
        tree = encode_directory(source)
        assert ".apiver" not in tree
        assert ".version" not in tree
        assert "0" not in tree

    def test_custom_and_glob_exclusions(self, source):
        (source / "node_modules" / "x").mkdir(parents=True)
        (source / "node_modules" / "x" / "index.js").write_text("x")
        (source / "debug.log").write_text("log")
        rules = ExclusionRules(["node_modules", "*.log"])
        tree = encode_directory(source, rules)
        assert "node_modules" not in tree
        assert "debug.log" not in tree
        assert "routes" in tree

    def test_decode_keeps_unrelated_files(self, source, tmp_path):
        target = tmp_path / "out"
        target.mkdir()
        (target / "keep.txt").write_text("keep")
        decode_tree(encode_directory(source), target)
        assert (target / "keep.txt").read_text() == "keep"
        assert (target / "routes" / "users.js").read_text() == "users\n"

    def test_deterministic(self, source):
        assert tree_to_json(encode_directory(source)) == tree_to_json(encode_directory(source))


class TestWireFormat:
    def test_json_round_trip(self, source):
        tree = encode_directory(source)
        assert tree_from_json(tree_to_json(tree)) == tree

    def test_rejects_non_tree(self):
        with pytest.raises(ValueError):
            tree_from_json(b"[1, 2]")
        with pytest.raises(ValueError):
            tree_from_json(b'{"a": 5}')


class TestPathAccess:
    def test_flatten_unflatten(self, source):
        tree = encode_directory(source)
        flat = flatten_tree(tree)
        assert flat["routes/admin/index.js"] == b"admin\n"
        assert unflatten(flat) == tree

    def test_get_put(self):
        tree = {}
        put_file(tree, "a/b/c.txt", b"c")
        assert get_file(tree, "a/b/c.txt") == b"c"
        assert get_file(tree, "./a//b/c.txt") == b"c"
        assert get_file(tree, "a/b") is None
        assert get_file(tree, "missing.txt") is None

    def test_remove_prunes_empty_dirs(self):
        tree = {}
        put_file(tree, "a/b/c.txt", b"c")
        put_file(tree, "a/keep.txt", b"k")
        assert remove_path(tree, "a/b/c.txt") is True
        assert tree == {"a": {"keep.txt": b"k"}}

    def test_remove_absent(self):
        tree = {"a": b"x"}
        assert remove_path(tree, "b") is False
        assert remove_path(tree, "a/b/c") is False
        assert tree == {"a": b"x"}

    def test_normalize_rejects_escape(self):
        assert normalize_path("routes\\users.js") == "routes/users.js"
        with pytest.raises(ValueError):
            normalize_path("../etc/passwd")


class TestExclusionRules:
    def test_reserved_names_always_present(self):
        rules = ExclusionRules(["dist"])
        for name in (".apiver", ".version", "0", "1", "2", "dist"):
            assert rules.excludes(name)
        assert not rules.excludes("routes")

    def test_excludes_path(self):
        assert DEFAULT_RULES.excludes_path(".apiver/meta.json")
        assert not DEFAULT_RULES.excludes_path("routes/users.js")

    def test_union(self):
        rules = DEFAULT_RULES.union(["*.tmp"])
        assert rules.excludes("x.tmp")
        assert not DEFAULT_RULES.excludes("x.tmp")
