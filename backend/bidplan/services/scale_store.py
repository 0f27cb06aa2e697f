"""Scale settings store — per-plan, per-page ScaleSetting persistence with bulk propagation."""
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from bidplan.config import MAX_PAGES, SCALE_SETTINGS
from bidplan.models.schemas import Point, ScaleSetting
from bidplan.services.data_access import DataAccess, DataAccessError
from bidplan.services.perf_monitor import timed_async, tracker

logger = logging.getLogger("bidplan-scale")

PageKey = Union[int, str]


class InvalidPageError(ValueError):
    """Page identifier is not a whole number >= 1."""


def canonical_page(page: PageKey) -> int:
    """
    Single canonical page key: a positive int.

    Accepts 3, "3", " 3 " and 3.0; rejects bools, fractional values, and anything below 1.
    """
    if isinstance(page, bool):
        raise InvalidPageError(f"Invalid page number: {page!r}")
    if isinstance(page, int):
        value = page
    elif isinstance(page, float):
        if not page.is_integer():
            raise InvalidPageError(f"Invalid page number: {page!r}")
        value = int(page)
    elif isinstance(page, str):
        try:
            value = int(page.strip())
        except ValueError:
            raise InvalidPageError(f"Invalid page number: {page!r}")
    else:
        raise InvalidPageError(f"Invalid page number: {page!r}")
    if value < 1:
        raise InvalidPageError(f"Page numbers start at 1, got {value}")
    return value


@dataclass
class ApplyToAllReport:
    """Per-page outcome of apply_to_all. Writes stop at the first failing page."""
    plan_id: str
    total_pages: int
    succeeded: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    unattempted: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.unattempted and len(self.succeeded) == self.total_pages

    def summary(self) -> str:
        if self.ok:
            return f"Scale applied to all {self.total_pages} pages"
        return f"{len(self.succeeded)} of {self.total_pages} pages updated, please retry"

    def to_dict(self) -> dict:
        return {
            "plan_id": self.plan_id,
            "total_pages": self.total_pages,
            "ok": self.ok,
            "succeeded": self.succeeded,
            "failed": {str(k): v for k, v in self.failed.items()},
            "unattempted": self.unattempted,
            "summary": self.summary(),
        }


def _record_to_setting(record: dict) -> Optional[ScaleSetting]:
    ppu = record.get("pixels_per_unit")
    if ppu is None or not record.get("scale_ratio") or not record.get("unit"):
        return None
    line = None
    raw_line = record.get("calibration_line") or {}
    if isinstance(raw_line, dict) and len(raw_line.get("points") or []) == 2:
        (x1, y1), (x2, y2) = raw_line["points"]
        line = (Point(x=x1, y=y1), Point(x=x2, y=y2))
    try:
        return ScaleSetting(
            ratio=record["scale_ratio"],
            pixels_per_unit=float(ppu),
            unit=record["unit"],
            calibration_line=line,
        )
    except ValueError as e:
        logger.warning(f"Ignoring invalid stored scale setting {record.get('id')}: {e}")
        return None


def _setting_to_fields(setting: ScaleSetting) -> dict:
    line = None
    if setting.calibration_line:
        line = {"points": [[p.x, p.y] for p in setting.calibration_line]}
    return {
        "scale_ratio": setting.ratio,
        "pixels_per_unit": setting.pixels_per_unit,
        "unit": setting.unit,
        "calibration_line": line,
    }


class ScaleSettingsStore:
    """
    Durable page -> ScaleSetting mapping for each plan.

    Stored page numbers are always ints, but rows written by older clients may
    carry the page as text, so lookups compare canonicalised keys.
    """

    def __init__(self, data: DataAccess):
        self.data = data

    async def _rows_by_page(self, plan_id: str) -> dict[int, list[dict]]:
        rows = await self.data.read(SCALE_SETTINGS, {"plan_id": plan_id})
        by_page: dict[int, list[dict]] = {}
        for row in rows:
            try:
                page = canonical_page(row.get("page_number"))
            except InvalidPageError:
                logger.warning(f"Skipping scale row {row.get('id')} with bad page {row.get('page_number')!r}")
                continue
            by_page.setdefault(page, []).append(row)
        return by_page

    async def get(self, plan_id: str, page: PageKey) -> Optional[ScaleSetting]:
        page = canonical_page(page)
        rows = (await self._rows_by_page(plan_id)).get(page, [])
        for row in rows:
            setting = _record_to_setting(row)
            if setting is not None:
                return setting
        return None

    async def get_all(self, plan_id: str) -> dict[int, ScaleSetting]:
        settings: dict[int, ScaleSetting] = {}
        for page, rows in (await self._rows_by_page(plan_id)).items():
            for row in rows:
                setting = _record_to_setting(row)
                if setting is not None:
                    settings[page] = setting
                    break
        logger.info(f"Loaded {len(settings)} scale settings for plan {plan_id}")
        return dict(sorted(settings.items()))

    async def _upsert(self, plan_id: str, page: int, setting: ScaleSetting, existing: list[dict]) -> None:
        fields = _setting_to_fields(setting)
        if existing:
            if len(existing) > 1:
                logger.warning(f"Plan {plan_id} page {page} has {len(existing)} scale rows; updating the first")
            await self.data.write(SCALE_SETTINGS, existing[0]["id"], {**fields, "page_number": page})
        else:
            await self.data.insert(SCALE_SETTINGS, {"plan_id": plan_id, "page_number": page, **fields})

    async def set(self, plan_id: str, page: PageKey, setting: ScaleSetting) -> ScaleSetting:
        """Replace the page's setting (insert when absent). Safe to repeat."""
        page = canonical_page(page)
        if not isinstance(setting, ScaleSetting):
            setting = ScaleSetting.model_validate(setting)
        existing = (await self._rows_by_page(plan_id)).get(page, [])
        await self._upsert(plan_id, page, setting, existing)
        logger.info(f"Saved scale for plan {plan_id} page {page}: {setting.ratio} ({setting.pixels_per_unit:.4f} px/{setting.unit})")
        return setting

    @timed_async
    async def apply_to_all(self, plan_id: str, setting: ScaleSetting, total_pages: int) -> ApplyToAllReport:
        """
        Write the same setting to pages 1..total_pages, in order.

        Not transactional: if page k fails, pages 1..k-1 stay updated, page k is
        reported failed and k+1..N are left unattempted.
        """
        if isinstance(total_pages, bool) or not isinstance(total_pages, int) or not 1 <= total_pages <= MAX_PAGES:
            raise InvalidPageError(f"total_pages must be between 1 and {MAX_PAGES}, got {total_pages!r}")
        if not isinstance(setting, ScaleSetting):
            setting = ScaleSetting.model_validate(setting)

        report = ApplyToAllReport(plan_id=plan_id, total_pages=total_pages)
        rows = await self._rows_by_page(plan_id)
        for page in range(1, total_pages + 1):
            try:
                await self._upsert(plan_id, page, setting, rows.get(page, []))
            except DataAccessError as e:
                logger.error(f"apply_to_all: plan {plan_id} page {page} failed: {e}")
                report.failed[page] = str(e)
                report.unattempted = list(range(page + 1, total_pages + 1))
                tracker.record_partial_failure("ScaleSettingsStore.apply_to_all")
                break
            report.succeeded.append(page)

        logger.info(f"apply_to_all plan {plan_id}: {report.summary()}")
        return report

    async def delete(self, plan_id: str, page: PageKey) -> bool:
        """Clear a page's calibration. Returns False when the page had none."""
        page = canonical_page(page)
        rows = (await self._rows_by_page(plan_id)).get(page, [])
        for row in rows:
            await self.data.delete(SCALE_SETTINGS, row["id"])
        return bool(rows)
