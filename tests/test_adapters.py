"""Content adapter tests."""

from unittest import mock

import pytest

from apiver import adapters
from apiver.adapters import AdapterRegistry, json_adapter, text_adapter


class TestBuiltins:
    def test_text(self):
        assert text_adapter("a.txt", "héllo".encode()) == "héllo"

    def test_json(self):
        assert json_adapter("routes.json", b'{"get": "/users"}') == {"get": "/users"}

    def test_json_error_names_file(self):
        with pytest.raises(ValueError, match="routes.json"):
            json_adapter("routes.json", b"{broken")


class TestRegistry:
    def test_defaults(self):
        registry = AdapterRegistry.with_defaults()
        assert registry.adapt("config/app.json", b"[1, 2]") == [1, 2]
        assert registry.adapt("README.md", b"# api") == "# api"

    def test_unmatched_returns_bytes(self):
        registry = AdapterRegistry.with_defaults()
        assert registry.adapt("logo.png", b"\x89PNG") == b"\x89PNG"
        assert registry.adapt("Makefile", b"all:") == b"all:"

    def test_fallback(self):
        registry = AdapterRegistry(fallback=text_adapter)
        assert registry.adapt("routes/users.js", b"users") == "users"

    def test_suffix_normalized(self):
        registry = AdapterRegistry()
        registry.register("JS", lambda path, content: ("js", path))
        assert registry.suffixes() == [".js"]
        assert registry.adapt("routes/USERS.JS", b"") == ("js", "routes/USERS.JS")

    def test_adapt_all(self):
        registry = AdapterRegistry.with_defaults()
        files = {"a.json": b"{}", "b.bin": b"\x00"}
        assert registry.adapt_all(files) == {"a.json": {}, "b.bin": b"\x00"}


class TestDiscovery:
    def _entry_point(self, name, obj=None, error=None):
        ep = mock.Mock()
        ep.name = name
        if error is not None:
            ep.load.side_effect = error
        else:
            ep.load.return_value = obj
        return ep

    def test_discovered_adapters_registered(self):
        yaml_adapter = lambda path, content: {"yaml": True}  # noqa: E731
        eps = mock.Mock()
        eps.select.return_value = [self._entry_point(".yaml", yaml_adapter)]
        with mock.patch.object(adapters, "entry_points", return_value=eps):
            registry = AdapterRegistry.with_defaults(discover_plugins=True)
        eps.select.assert_called_once_with(group="apiver.adapters")
        assert registry.adapt("openapi.yaml", b"") == {"yaml": True}

    def test_broken_entry_point_skipped(self, caplog):
        eps = mock.Mock()
        eps.select.return_value = [
            self._entry_point(".bad", error=ImportError("no module")),
            self._entry_point(".notcallable", obj="just a string"),
        ]
        with mock.patch.object(adapters, "entry_points", return_value=eps):
            registry = AdapterRegistry.with_defaults(discover_plugins=True)
        assert ".bad" not in registry.suffixes()
        assert ".notcallable" not in registry.suffixes()
        assert "no module" in caplog.text
