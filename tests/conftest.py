"""
Shared pytest configuration and fixtures.

Every test runs with APIVER_KEY set to a throwaway secret, so nothing
here can accidentally read (or need) a developer's real key.
"""

import pytest

from apiver.store import VersionStore

TEST_SECRET = "test-secret-do-not-use-0123456789abcdef"


@pytest.fixture(autouse=True)
def apiver_key(monkeypatch):
    monkeypatch.setenv("APIVER_KEY", TEST_SECRET)
    return TEST_SECRET


@pytest.fixture
def project(tmp_path):
    """A small API project working area (no store yet)."""
    root = tmp_path / "project"
    (root / "routes").mkdir(parents=True)
    (root / "routes" / "users.js").write_text("module.exports = function users() {\n  return 'v1';\n};\n")
    (root / "package.json").write_text('{\n  "name": "demo-api"\n}\n')
    return root


@pytest.fixture
def store(project):
    """A store initialized with v1 from the project fixture."""
    s = VersionStore(project)
    s.initialize("v1")
    return s
