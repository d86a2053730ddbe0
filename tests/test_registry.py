"""Tests for the server registry."""

from __future__ import annotations

import os

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from conftest import make_record
from plan10.errors import ConfigError, DuplicateName, NotFound
from plan10.models import TargetSelector
from plan10.registry import ServerRegistry


class TestCrud:
    def test_add_then_get_returns_equal_record(self, registry):
        record = make_record("mini", tags=frozenset({"lab", "office"}), port=2222)
        registry.add(record)
        assert registry.get("mini") == record

    def test_get_missing_returns_none(self, registry):
        assert registry.get("nope") is None

    def test_add_duplicate_name_fails(self, registry):
        registry.add(make_record("mini"))
        with pytest.raises(DuplicateName):
            registry.add(make_record("mini", host="other.local"))
        assert registry.get("mini").host == "mini.local"

    def test_remove_then_get_returns_none(self, registry):
        registry.add(make_record("mini"))
        registry.remove("mini")
        assert registry.get("mini") is None
        assert len(registry) == 0

    def test_remove_missing_fails(self, registry):
        with pytest.raises(NotFound):
            registry.remove("ghost")

    def test_update_keeps_position(self, registry):
        for name in ("a", "b", "c"):
            registry.add(make_record(name))
        registry.update(make_record("b", host="10.0.0.2"))
        assert [r.name for r in registry.list()] == ["a", "b", "c"]
        assert registry.get("b").host == "10.0.0.2"

    def test_update_missing_fails(self, registry):
        with pytest.raises(NotFound):
            registry.update(make_record("ghost"))

    def test_set_enabled(self, registry):
        registry.add(make_record("mini"))
        registry.set_enabled("mini", False)
        assert registry.get("mini").enabled is False

    def test_set_enabled_missing_fails(self, registry):
        with pytest.raises(NotFound):
            registry.set_enabled("ghost", True)

    def test_invalid_threshold_override_is_rejected(self, registry):
        with pytest.raises(PydanticValidationError):
            registry.add(make_record("mini", threshold_overrides={"battery_warning_level": 500}))
        assert len(registry) == 0


class TestQueries:
    @pytest.fixture
    def fleet(self, registry):
        registry.add(make_record("air", tags=frozenset({"lab"})))
        registry.add(make_record("pro", tags=frozenset({"lab", "gpu"})))
        registry.add(make_record("old", tags=frozenset({"office"}), enabled=False))
        return registry

    def test_list_keeps_insertion_order(self, fleet):
        assert [r.name for r in fleet.list()] == ["air", "pro", "old"]

    def test_list_with_tags_requires_all(self, fleet):
        assert [r.name for r in fleet.list(["lab"])] == ["air", "pro"]
        assert [r.name for r in fleet.list(["lab", "gpu"])] == ["pro"]
        assert fleet.list(["missing"]) == []

    def test_resolve_by_name_then_host(self, fleet):
        assert fleet.resolve("air").name == "air"
        assert fleet.resolve("pro.local").name == "pro"
        assert fleet.resolve("unknown") is None

    def test_select_skips_disabled(self, fleet):
        assert [r.name for r in fleet.select(TargetSelector())] == ["air", "pro"]

    def test_select_can_include_disabled(self, fleet):
        selected = fleet.select(TargetSelector(include_disabled=True))
        assert [r.name for r in selected] == ["air", "pro", "old"]

    def test_select_by_names_in_given_order(self, fleet):
        selected = fleet.select(TargetSelector(names=("pro", "air", "pro")))
        assert [r.name for r in selected] == ["pro", "air"]

    def test_select_unknown_name_fails(self, fleet):
        with pytest.raises(NotFound):
            fleet.select(TargetSelector(names=("air", "ghost")))

    def test_select_names_and_tags(self, fleet):
        selected = fleet.select(TargetSelector(names=("air", "pro"), tags=frozenset({"gpu"})))
        assert [r.name for r in selected] == ["pro"]


class TestPersistence:
    def test_mutations_survive_reload(self, registry, registry_path):
        registry.add(make_record("air", tags=frozenset({"lab"}), threshold_overrides={"max_halt_level_percent": 3}))
        registry.add(make_record("pro"))
        registry.remove("pro")

        reloaded = ServerRegistry(registry_path)
        assert [r.name for r in reloaded.list()] == ["air"]
        assert reloaded.get("air") == registry.get("air")

    def test_file_format(self, registry, registry_path):
        registry.add(make_record("air", tags=frozenset({"b", "a"})))
        document = yaml.safe_load(registry_path.read_text())
        assert document["version"] == 1
        assert document["servers"][0]["name"] == "air"
        assert document["servers"][0]["tags"] == ["a", "b"]

    def test_missing_file_is_empty(self, tmp_path):
        assert len(ServerRegistry(tmp_path / "absent.yaml")) == 0

    def test_empty_file_is_empty(self, registry_path):
        registry_path.parent.mkdir(parents=True)
        registry_path.write_text("")
        assert len(ServerRegistry(registry_path)) == 0

    @pytest.mark.parametrize(
        "content",
        [
            "servers: [unclosed",
            "- just\n- a list\n",
            "servers:\n  - name: a\n    host: h\n",
            "servers:\n  - {name: a, host: h, user: u}\n  - {name: a, host: h2, user: u}\n",
            "servers:\n  - {name: a, host: h, user: u, port: 70000}\n",
            "servers:\n  - {name: a, host: h, user: u, threshold_overrides: {battery_warning_level: 500}}\n",
        ],
        ids=["bad-yaml", "wrong-shape", "missing-user", "duplicate-name", "bad-port", "bad-threshold"],
    )
    def test_malformed_file_raises_config_error(self, registry_path, content):
        registry_path.parent.mkdir(parents=True)
        registry_path.write_text(content)
        with pytest.raises(ConfigError):
            ServerRegistry(registry_path)

    def test_failed_write_keeps_previous_file(self, registry, registry_path, monkeypatch):
        registry.add(make_record("air"))
        before = registry_path.read_text()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("plan10.registry.os.replace", broken_replace)
        with pytest.raises(ConfigError):
            registry.add(make_record("pro"))

        assert registry_path.read_text() == before
        assert registry.get("pro") is None
        leftovers = [p for p in os.listdir(registry_path.parent) if p.endswith(".tmp")]
        assert leftovers == []
