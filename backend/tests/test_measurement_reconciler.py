"""
test_measurement_reconciler.py — Tests for the measurement sync pass.

Tests cover:
  - Empty client list returns the stored set unchanged (no deletes by absence)
  - Pending-local annotations are inserted under their client id
  - Repeat sync with the same input performs no writes
  - Edited annotations rewrite the stored record (client wins)
  - Insert / update failures are reported per id without aborting the pass
  - Derived measurements follow the page's ScaleSetting
  - Legacy rows: JSON text columns, camelCase style keys
  - Explicit delete and the no-user-context path
"""

from datetime import datetime, timezone

import pytest

from bidplan.services.data_access import InMemoryDataAccess
from bidplan.services.measurement_reconciler import MeasurementReconciler, normalize_json
from bidplan.services.perf_monitor import tracker

from conftest import USER_ID

PLAN = "plan-a"


def _writes(data, op):
    return [c for c in data.calls if c[0] == op and c[1] == "plan_drawings"]


class TestNormalizeJson:

    def test_text_is_parsed(self):
        assert normalize_json('{"points": [1, 2]}') == {"points": [1, 2]}

    def test_malformed_text_is_empty(self):
        assert normalize_json("{not json") is None

    def test_structured_value_passes_through(self):
        assert normalize_json({"a": 1}) == {"a": 1}
        assert normalize_json(None) is None


class TestSyncInsertsAndUnion:

    def test_empty_client_list_returns_stored_set(self, reconciler, data, make_annotation, run):
        run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1"), make_annotation("m2")]))
        result = run(reconciler.sync(PLAN, USER_ID, []))
        assert [a.id for a in result.annotations] == ["m1", "m2"]
        assert len(data.records("plan_drawings")) == 2

    def test_pending_annotation_keeps_client_id(self, reconciler, data, make_annotation, run):
        result = run(reconciler.sync(PLAN, USER_ID, [make_annotation("local-1700000000")]))
        assert result.inserted == ["local-1700000000"]
        row = data.records("plan_drawings")[0]
        assert row["id"] == "local-1700000000"
        assert row["plan_id"] == PLAN
        assert row["user_id"] == USER_ID
        assert row["drawing_type"] == "measurement"
        assert row["geometry"] == {"points": [0.0, 0.0, 100.0, 0.0]}

    def test_area_stored_with_area_drawing_type(self, reconciler, data, make_annotation, run):
        run(reconciler.sync(PLAN, USER_ID, [make_annotation("a1", points=(0, 0, 10, 0, 10, 10), kind="area")]))
        assert data.records("plan_drawings")[0]["drawing_type"] == "area"

    def test_repeat_sync_performs_no_writes(self, reconciler, data, make_annotation, run):
        """Second call with the same input is a no-op and returns the same set."""
        batch = [make_annotation("m1"), make_annotation("m2", points=(0, 0, 0, 50))]
        first = run(reconciler.sync(PLAN, USER_ID, batch))
        data.calls.clear()
        second = run(reconciler.sync(PLAN, USER_ID, batch))

        assert _writes(data, "insert") == []
        assert _writes(data, "write") == []
        assert second.inserted == [] and second.updated == []
        assert [a.id for a in second.annotations] == [a.id for a in first.annotations]
        assert len(data.records("plan_drawings")) == 2

    def test_result_is_stored_first_then_new(self, reconciler, make_annotation, run):
        run(reconciler.sync(PLAN, USER_ID, [make_annotation("old")]))
        result = run(reconciler.sync(PLAN, USER_ID, [make_annotation("new")]))
        assert [a.id for a in result.annotations] == ["old", "new"]

    def test_duplicate_ids_in_client_list_collapse(self, reconciler, data, make_annotation, run):
        result = run(reconciler.sync(PLAN, USER_ID, [
            make_annotation("m1", points=(0, 0, 10, 0)),
            make_annotation("m1", points=(0, 0, 20, 0)),
        ]))
        assert len(result.annotations) == 1
        assert data.records("plan_drawings")[0]["geometry"]["points"] == [0.0, 0.0, 20.0, 0.0]

    def test_other_users_measurements_are_not_returned(self, reconciler, make_annotation, run):
        run(reconciler.sync(PLAN, "someone-else", [make_annotation("theirs")]))
        result = run(reconciler.sync(PLAN, USER_ID, [make_annotation("mine")]))
        assert [a.id for a in result.annotations] == ["mine"]

    def test_accepts_plain_dicts(self, reconciler, run):
        result = run(reconciler.sync(PLAN, USER_ID, [{"id": "d1", "points": [0, 0, 5, 5], "page_number": 2}]))
        assert result.inserted == ["d1"]


class TestSyncEdits:

    def test_edit_rewrites_stored_record(self, reconciler, data, make_annotation, run):
        run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1")]))
        edited = make_annotation("m1", points=(0, 0, 300, 0), label="North wall")
        result = run(reconciler.sync(PLAN, USER_ID, [edited]))

        assert result.updated == ["m1"]
        row = data.records("plan_drawings")[0]
        assert row["geometry"]["points"] == [0.0, 0.0, 300.0, 0.0]
        assert row["label"] == "North wall"
        assert result.annotations[0].label == "North wall"

    def test_edit_keeps_original_created_at(self, reconciler, make_annotation, run):
        created = datetime(2026, 3, 1, tzinfo=timezone.utc)
        run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1", created_at=created)]))
        result = run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1", points=(0, 0, 1, 1))]))
        assert result.annotations[0].created_at == created

    def test_style_change_counts_as_edit(self, reconciler, make_annotation, run):
        run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1")]))
        recoloured = make_annotation("m1", style={"color": "#ef4444"})
        assert run(reconciler.sync(PLAN, USER_ID, [recoloured])).updated == ["m1"]


class TestSyncFailures:

    def test_failed_insert_is_dropped_with_warning(self, reconciler, data, make_annotation, run):
        data.fail_on("insert", "plan_drawings", lambda rec: rec["id"] == "bad")
        result = run(reconciler.sync(PLAN, USER_ID, [make_annotation("good"), make_annotation("bad")]))

        assert result.partial
        assert result.inserted == ["good"]
        assert list(result.failed) == ["bad"]
        assert [a.id for a in result.annotations] == ["good"]
        assert any("bad" in w for w in result.warnings)
        assert result.summary() == "1 of 2 measurement changes saved, please retry"

    def test_failed_update_keeps_client_version(self, reconciler, data, make_annotation, run):
        run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1")]))
        data.fail_on("write", "plan_drawings")
        result = run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1", points=(0, 0, 40, 0))]))

        assert list(result.failed) == ["m1"]
        assert result.annotations[0].points == [0.0, 0.0, 40.0, 0.0]
        assert data.records("plan_drawings")[0]["geometry"]["points"] == [0.0, 0.0, 100.0, 0.0]

    def test_partial_failures_are_counted(self, reconciler, data, make_annotation, run):
        data.fail_on("insert", "plan_drawings")
        run(reconciler.sync(PLAN, USER_ID, [make_annotation("a"), make_annotation("b")]))
        assert tracker.get_metrics()["partial_failures"] == {"MeasurementReconciler.sync": 2}

    def test_read_failure_propagates(self, reconciler, data, make_annotation, run):
        from bidplan.services.data_access import DataAccessError
        data.fail_on("read", "plan_drawings")
        with pytest.raises(DataAccessError):
            run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1")]))


class TestDerivedMeasurements:

    def test_uncalibrated_page_has_no_measurements(self, reconciler, make_annotation, run):
        result = run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1")]))
        assert result.annotations[0].measurements is None

    def test_calibrated_page_gets_real_lengths(self, reconciler, scale_store, data, ten_px_per_ft,
                                                make_annotation, run):
        run(scale_store.set(PLAN, 1, ten_px_per_ft))
        result = run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1")]))
        values = result.annotations[0].measurements
        assert values.unit == "ft"
        assert values.total_length == pytest.approx(10.0)
        stored = data.records("plan_drawings")[0]["measurement_data"]
        assert stored["measurement_type"] == "line"

    def test_load_recomputes_after_recalibration(self, reconciler, scale_store, make_annotation, run):
        from bidplan.models.schemas import ScaleSetting
        run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1")]))
        run(scale_store.set(PLAN, 1, ScaleSetting(ratio="20 ft", pixels_per_unit=5.0, unit="ft")))
        loaded = run(reconciler.load(PLAN, USER_ID))
        assert loaded[0].measurements.total_length == pytest.approx(20.0)

    def test_calibration_is_per_page(self, reconciler, scale_store, ten_px_per_ft, make_annotation, run):
        run(scale_store.set(PLAN, 1, ten_px_per_ft))
        result = run(reconciler.sync(PLAN, USER_ID, [make_annotation("p2", page_number=2)]))
        assert result.annotations[0].measurements is None


class TestLegacyRows:

    def test_json_text_columns_and_camel_case_style(self, run):
        data = InMemoryDataAccess(seed={"plan_drawings": [{
            "id": "legacy-1", "plan_id": PLAN, "user_id": USER_ID, "page_number": "1",
            "drawing_type": "measurement",
            "geometry": '{"points": [0, 0, 50, 0]}',
            "style": '{"color": "#10b981", "strokeWidth": 4}',
            "measurement_data": '{"measurement_type": "line"}',
            "created_at": datetime(2025, 6, 1, tzinfo=timezone.utc),
        }]})
        loaded = run(MeasurementReconciler(data).load(PLAN, USER_ID))
        assert len(loaded) == 1
        assert loaded[0].points == [0.0, 0.0, 50.0, 0.0]
        assert loaded[0].style.color == "#10b981"
        assert loaded[0].style.stroke_width == 4
        assert loaded[0].layer_name == "measurements"

    def test_area_recognised_from_measurement_data(self, run):
        data = InMemoryDataAccess(seed={"plan_drawings": [{
            "id": "legacy-area", "plan_id": PLAN, "user_id": USER_ID, "page_number": 1,
            "drawing_type": "measurement", "geometry": {"points": [0, 0, 10, 0, 10, 10]},
            "measurement_data": {"measurement_type": "area"},
        }]})
        assert run(MeasurementReconciler(data).load(PLAN, USER_ID))[0].kind == "area"

    def test_malformed_row_is_skipped(self, run):
        data = InMemoryDataAccess(seed={"plan_drawings": [
            {"id": "broken", "plan_id": PLAN, "user_id": USER_ID, "page_number": 1,
             "drawing_type": "measurement", "geometry": {"points": [0, 0, 10]}},
            {"id": "fine", "plan_id": PLAN, "user_id": USER_ID, "page_number": 1,
             "drawing_type": "measurement", "geometry": {"points": [0, 0, 10, 0]}},
        ]})
        assert [a.id for a in run(MeasurementReconciler(data).load(PLAN, USER_ID))] == ["fine"]

    def test_non_measurement_drawings_are_ignored(self, run):
        data = InMemoryDataAccess(seed={"plan_drawings": [
            {"id": "pen", "plan_id": PLAN, "user_id": USER_ID, "page_number": 1,
             "drawing_type": "freehand", "geometry": {"points": [0, 0, 10, 0]}},
        ]})
        assert run(MeasurementReconciler(data).load(PLAN, USER_ID)) == []


class TestDeleteAndNoUser:

    def test_delete_removes_record(self, reconciler, data, make_annotation, run):
        run(reconciler.sync(PLAN, USER_ID, [make_annotation("m1"), make_annotation("m2")]))
        assert run(reconciler.delete(PLAN, USER_ID, "m1")) is True
        assert [r["id"] for r in data.records("plan_drawings")] == ["m2"]

    def test_delete_unknown_returns_false(self, reconciler, run):
        assert run(reconciler.delete(PLAN, USER_ID, "missing")) is False

    def test_cannot_delete_another_users_measurement(self, reconciler, make_annotation, run):
        run(reconciler.sync(PLAN, "someone-else", [make_annotation("theirs")]))
        assert run(reconciler.delete(PLAN, USER_ID, "theirs")) is False

    def test_no_user_returns_client_list_unsaved(self, reconciler, data, make_annotation, run):
        result = run(reconciler.sync(PLAN, None, [make_annotation("m1")]))
        assert [a.id for a in result.annotations] == ["m1"]
        assert result.warnings
        assert data.records("plan_drawings") == []
