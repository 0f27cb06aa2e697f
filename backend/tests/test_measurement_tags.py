"""
test_measurement_tags.py — Tests for MeasurementTagStore.

Tests cover:
  - create: validation of name and #rrggbb colour, colour lower-casing
  - load: per-plan, sorted by name
  - update / delete: missing tags report None / False, other users' tags are untouchable
"""

import pytest

from bidplan.services.measurement_tags import MeasurementTagStore

from conftest import USER_ID


@pytest.fixture
def tags(data):
    return MeasurementTagStore(data)


class TestCreate:

    def test_create_and_load(self, tags, run):
        tag = run(tags.create("plan-a", USER_ID, "  Walls ", "#EF4444"))
        assert tag.name == "Walls"
        assert tag.color == "#ef4444"
        assert [t.id for t in run(tags.load("plan-a"))] == [tag.id]

    @pytest.mark.parametrize("name,color", [
        ("", "#ef4444"),
        ("   ", "#ef4444"),
        ("Walls", "red"),
        ("Walls", "#fff"),
        ("Walls", None),
    ])
    def test_invalid_input_rejected(self, tags, data, name, color, run):
        with pytest.raises(ValueError):
            run(tags.create("plan-a", USER_ID, name, color))
        assert data.records("plan_measurement_tags") == []


class TestLoadUpdateDelete:

    def test_load_is_sorted_and_scoped_to_plan(self, tags, run):
        run(tags.create("plan-a", USER_ID, "windows", "#10b981"))
        run(tags.create("plan-a", USER_ID, "Doors", "#f59e0b"))
        run(tags.create("plan-b", USER_ID, "Roof", "#6366f1"))
        assert [t.name for t in run(tags.load("plan-a"))] == ["Doors", "windows"]

    def test_update(self, tags, run):
        tag = run(tags.create("plan-a", USER_ID, "Walls", "#ef4444"))
        updated = run(tags.update(tag.id, "Partitions", "#10B981"))
        assert updated.name == "Partitions" and updated.color == "#10b981"
        assert run(tags.get(tag.id)).name == "Partitions"

    def test_update_missing_returns_none(self, tags, run):
        assert run(tags.update("missing", "Walls", "#ef4444")) is None

    def test_update_validates_before_lookup(self, tags, run):
        with pytest.raises(ValueError):
            run(tags.update("missing", "", "#ef4444"))

    def test_delete(self, tags, run):
        tag = run(tags.create("plan-a", USER_ID, "Walls", "#ef4444"))
        assert run(tags.delete(tag.id)) is True
        assert run(tags.get(tag.id)) is None
        assert run(tags.delete(tag.id)) is False

    def test_other_user_cannot_update_or_delete(self, tags, run):
        tag = run(tags.create("plan-a", USER_ID, "Walls", "#ef4444"))
        assert run(tags.get(tag.id, "someone-else")) is None
        assert run(tags.update(tag.id, "Hijacked", "#000000", user_id="someone-else")) is None
        assert run(tags.delete(tag.id, user_id="someone-else")) is False
        stored = run(tags.get(tag.id, USER_ID))
        assert stored.name == "Walls" and stored.color == "#ef4444"

    def test_owner_can_update_and_delete(self, tags, run):
        tag = run(tags.create("plan-a", USER_ID, "Walls", "#ef4444"))
        assert run(tags.update(tag.id, "Partitions", "#10b981", user_id=USER_ID)).name == "Partitions"
        assert run(tags.delete(tag.id, user_id=USER_ID)) is True
