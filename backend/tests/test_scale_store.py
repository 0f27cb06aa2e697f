"""
test_scale_store.py — Tests for per-page scale persistence.

Tests cover:
  - canonical_page: one key type for int, numeric text and integral floats
  - set / get: upsert semantics, idempotence, legacy text page numbers
  - get_all / delete
  - apply_to_all: full coverage, stop-at-first-failure partial report

All tests run against InMemoryDataAccess.
"""

import pytest

from bidplan.models.schemas import ScaleSetting
from bidplan.services.data_access import DataAccessError, InMemoryDataAccess
from bidplan.services.perf_monitor import tracker
from bidplan.services.scale_store import InvalidPageError, ScaleSettingsStore, canonical_page

PLAN = "plan-a"


class TestCanonicalPage:

    @pytest.mark.parametrize("page", [3, "3", " 3 ", 3.0])
    def test_equivalent_forms_map_to_one_key(self, page):
        assert canonical_page(page) == 3

    @pytest.mark.parametrize("page", [0, -1, "0", "abc", "", 2.5, True, None, [1]])
    def test_invalid_pages_rejected(self, page):
        with pytest.raises(InvalidPageError):
            canonical_page(page)


class TestSetAndGet:

    def test_get_uncalibrated_page_returns_none(self, scale_store, run):
        assert run(scale_store.get(PLAN, 1)) is None

    def test_set_then_get(self, scale_store, ten_px_per_ft, run):
        run(scale_store.set(PLAN, 2, ten_px_per_ft))
        assert run(scale_store.get(PLAN, 2)) == ten_px_per_ft

    def test_set_is_idempotent(self, scale_store, data, ten_px_per_ft, run):
        """Calling set twice with the same value leaves one record holding that value."""
        run(scale_store.set(PLAN, 1, ten_px_per_ft))
        run(scale_store.set(PLAN, 1, ten_px_per_ft))
        rows = [r for r in data.records("plan_scale_settings") if r["plan_id"] == PLAN]
        assert len(rows) == 1
        assert run(scale_store.get(PLAN, 1)) == ten_px_per_ft

    def test_set_replaces_existing_setting(self, scale_store, data, ten_px_per_ft, run):
        run(scale_store.set(PLAN, 1, ten_px_per_ft))
        replacement = ScaleSetting(ratio="1:100", pixels_per_unit=100.0, unit="m")
        run(scale_store.set(PLAN, 1, replacement))
        assert run(scale_store.get(PLAN, 1)) == replacement
        assert len(data.records("plan_scale_settings")) == 1

    def test_text_and_int_page_keys_hit_the_same_record(self, scale_store, data, ten_px_per_ft, run):
        run(scale_store.set(PLAN, "4", ten_px_per_ft))
        run(scale_store.set(PLAN, 4, ten_px_per_ft))
        assert len(data.records("plan_scale_settings")) == 1
        assert run(scale_store.get(PLAN, " 4 ")) == ten_px_per_ft

    def test_legacy_text_page_row_is_updated_not_duplicated(self, ten_px_per_ft, run):
        """A row written with page_number "2" by an older client is found and updated in place."""
        data = InMemoryDataAccess(seed={"plan_scale_settings": [{
            "id": "legacy", "plan_id": PLAN, "page_number": "2",
            "scale_ratio": "1:50", "pixels_per_unit": 50.0, "unit": "m",
        }]})
        store = ScaleSettingsStore(data)
        assert run(store.get(PLAN, 2)).ratio == "1:50"
        run(store.set(PLAN, 2, ten_px_per_ft))
        rows = data.records("plan_scale_settings")
        assert len(rows) == 1
        assert rows[0]["page_number"] == 2
        assert rows[0]["pixels_per_unit"] == 10.0

    def test_settings_are_isolated_per_plan(self, scale_store, ten_px_per_ft, run):
        run(scale_store.set("plan-a", 1, ten_px_per_ft))
        assert run(scale_store.get("plan-b", 1)) is None

    def test_invalid_page_rejected_before_write(self, scale_store, data, ten_px_per_ft, run):
        with pytest.raises(InvalidPageError):
            run(scale_store.set(PLAN, 0, ten_px_per_ft))
        assert data.records("plan_scale_settings") == []

    def test_calibration_line_round_trips(self, scale_store, run):
        from bidplan.services.scale_engine import resolve_calibration
        setting = resolve_calibration([(0, 0), (120, 0)], "10 ft")
        run(scale_store.set(PLAN, 1, setting))
        assert run(scale_store.get(PLAN, 1)).calibration_line == setting.calibration_line

    def test_write_failure_propagates(self, scale_store, data, ten_px_per_ft, run):
        data.fail_on("insert", "plan_scale_settings")
        with pytest.raises(DataAccessError):
            run(scale_store.set(PLAN, 1, ten_px_per_ft))


class TestGetAllAndDelete:

    def test_get_all_sorted_by_page(self, scale_store, ten_px_per_ft, run):
        for page in (3, 1, 2):
            run(scale_store.set(PLAN, page, ten_px_per_ft))
        assert list(run(scale_store.get_all(PLAN))) == [1, 2, 3]

    def test_rows_with_invalid_ratio_are_ignored(self, run):
        data = InMemoryDataAccess(seed={"plan_scale_settings": [
            {"plan_id": PLAN, "page_number": 1, "scale_ratio": "x", "pixels_per_unit": 0, "unit": "ft"},
            {"plan_id": PLAN, "page_number": 2, "scale_ratio": "10 ft", "pixels_per_unit": 10, "unit": "ft"},
        ]})
        assert list(run(ScaleSettingsStore(data).get_all(PLAN))) == [2]

    def test_delete(self, scale_store, ten_px_per_ft, run):
        run(scale_store.set(PLAN, 1, ten_px_per_ft))
        assert run(scale_store.delete(PLAN, 1)) is True
        assert run(scale_store.get(PLAN, 1)) is None
        assert run(scale_store.delete(PLAN, 1)) is False


class TestApplyToAll:

    def test_every_page_gets_the_setting(self, scale_store, ten_px_per_ft, run):
        report = run(scale_store.apply_to_all(PLAN, ten_px_per_ft, 5))
        assert report.ok
        assert report.succeeded == [1, 2, 3, 4, 5]
        settings = run(scale_store.get_all(PLAN))
        assert list(settings) == [1, 2, 3, 4, 5]
        assert all(s == ten_px_per_ft for s in settings.values())

    def test_overwrites_existing_pages_without_duplicates(self, scale_store, data, ten_px_per_ft, run):
        run(scale_store.set(PLAN, 2, ScaleSetting(ratio="1:50", pixels_per_unit=50.0, unit="m")))
        run(scale_store.apply_to_all(PLAN, ten_px_per_ft, 3))
        assert len(data.records("plan_scale_settings")) == 3
        assert run(scale_store.get(PLAN, 2)) == ten_px_per_ft

    def test_stops_at_first_failing_page(self, scale_store, data, ten_px_per_ft, run):
        """Page 3 fails: 1-2 stay written, 3 is reported failed, 4-5 are never attempted."""
        data.fail_on("insert", "plan_scale_settings", lambda rec: rec["page_number"] == 3)
        report = run(scale_store.apply_to_all(PLAN, ten_px_per_ft, 5))

        assert not report.ok
        assert report.succeeded == [1, 2]
        assert list(report.failed) == [3]
        assert report.unattempted == [4, 5]
        assert report.summary() == "2 of 5 pages updated, please retry"
        assert list(run(scale_store.get_all(PLAN))) == [1, 2]
        inserts = [c for c in data.calls if c[0] == "insert"]
        assert len(inserts) == 3

    def test_partial_failure_is_counted(self, scale_store, data, ten_px_per_ft, run):
        data.fail_on("insert", "plan_scale_settings", lambda rec: rec["page_number"] == 1)
        run(scale_store.apply_to_all(PLAN, ten_px_per_ft, 2))
        assert tracker.get_metrics()["partial_failures"] == {"ScaleSettingsStore.apply_to_all": 1}

    def test_retry_after_failure_completes(self, scale_store, data, ten_px_per_ft, run):
        data.fail_on("insert", "plan_scale_settings", lambda rec: rec["page_number"] == 2)
        run(scale_store.apply_to_all(PLAN, ten_px_per_ft, 3))
        data.clear_failures()
        report = run(scale_store.apply_to_all(PLAN, ten_px_per_ft, 3))
        assert report.ok
        assert len(data.records("plan_scale_settings")) == 3

    @pytest.mark.parametrize("total", [0, -2, 2001, "5", True])
    def test_invalid_page_count_rejected(self, scale_store, ten_px_per_ft, total, run):
        with pytest.raises(InvalidPageError):
            run(scale_store.apply_to_all(PLAN, ten_px_per_ft, total))

    def test_report_serialises_page_keys_as_text(self, scale_store, data, ten_px_per_ft, run):
        data.fail_on("insert", "plan_scale_settings", lambda rec: rec["page_number"] == 1)
        body = run(scale_store.apply_to_all(PLAN, ten_px_per_ft, 2)).to_dict()
        assert list(body["failed"]) == ["1"]
        assert body["ok"] is False
