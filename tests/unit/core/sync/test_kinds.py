"""Tests for the record-kind registry and its YAML loader."""

from __future__ import annotations

import pytest

from shs.core.sync.kinds import KindDefinition, KindRegistry, load_default_kinds, load_kind_file


class TestDefaultKinds:
    def test_bundled_kinds_load(self):
        registry = load_default_kinds()
        names = [k.name for k in registry.all()]
        assert names[:3] == ["username", "points", "favorites"]
        assert "symptoms" in names
        assert len(names) == 11

    def test_shapes(self, kinds):
        assert kinds.shape_of("username") == "string"
        assert kinds.shape_of("points") == "number"
        assert kinds.shape_of("skills") == "object"
        assert kinds.shape_of("unregistered") == "object"

    def test_healthcare_first_ordering(self, kinds):
        names = kinds.tracked_names(healthcare_first=True)
        assert names[:3] == ["symptoms", "calendar_notes", "goals"]
        assert names[3] == "username"

    def test_declaration_order_without_priority(self, kinds):
        assert kinds.tracked_names()[0] == "username"

    def test_untracked_excluded(self, kinds):
        assert "skills_completed" not in kinds.tracked_names()
        assert kinds.get("skills_completed") is not None

    def test_merge_flag(self, kinds):
        assert kinds.merges_with_default("skills_list") is True
        assert kinds.merges_with_default("favorites") is False


class TestRegistry:
    def test_duplicate_rejected(self):
        registry = KindRegistry([KindDefinition(name="a")])
        with pytest.raises(ValueError, match="Duplicate"):
            registry.register(KindDefinition(name="a"))

    def test_invalid_shape_rejected(self):
        with pytest.raises(ValueError, match="invalid shape"):
            KindRegistry([KindDefinition(name="a", shape="matrix")])


class TestLoadKindFile:
    def test_defaults_applied(self, tmp_path):
        path = tmp_path / "kinds.yaml"
        path.write_text("kinds:\n  - name: mood\n  - name: sleep\n    shape: number\n    healthcare: true\n")
        registry = load_kind_file(path)
        mood = registry.get("mood")
        assert mood.shape == "object"
        assert mood.table == "user_profiles"
        assert mood.tracked is True
        assert registry.is_healthcare("sleep")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "kinds.yaml"
        path.write_text("")
        assert load_kind_file(path).all() == []
