"""
Command objects for every user mutation in the plan viewer / job takeoff, plus
the explicit per-plan view state that produces them.

Each command knows how to execute itself against the stores and how to undo
what it did (compensate). CommandRunner executes commands, keeps a history for
undo, and compensates automatically when execute raises.

Commands are retry-safe: running the same command twice leaves storage in the
same state as running it once.
"""
import copy
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from bidplan.config import TAKEOFF_ANALYSIS
from bidplan.models.schemas import MeasurementAnnotation, Point, ScaleSetting
from bidplan.services.measurement_reconciler import MeasurementReconciler, SyncResult
from bidplan.services.scale_engine import resolve_calibration
from bidplan.services.scale_store import ApplyToAllReport, ScaleSettingsStore, canonical_page
from bidplan.services.takeoff_aggregator import (
    AggregatedTakeoff, PersistReport, TakeoffAggregator, strip_aggregation_fields,
)

logger = logging.getLogger("bidplan-commands")


class Command:
    description = "command"

    def __init__(self, key: str):
        # Commands sharing a key are serialised by CommandRunner when locking is on
        self.key = key

    async def execute(self) -> Any:
        raise NotImplementedError

    async def compensate(self) -> None:
        """Undo whatever execute() managed to do. Must be safe after a partial or failed execute."""


# ─── Scale commands ──────────────────────────────────────────────────────────

class SetScaleCommand(Command):
    description = "set page scale"

    def __init__(self, store: ScaleSettingsStore, plan_id: str, page, setting: ScaleSetting):
        super().__init__(plan_id)
        self.store = store
        self.plan_id = plan_id
        self.page = canonical_page(page)
        self.setting = setting
        self.previous: Optional[ScaleSetting] = None
        self._captured = False

    async def execute(self) -> ScaleSetting:
        self.previous = await self.store.get(self.plan_id, self.page)
        self._captured = True
        return await self.store.set(self.plan_id, self.page, self.setting)

    async def compensate(self) -> None:
        if not self._captured:
            return
        if self.previous is not None:
            await self.store.set(self.plan_id, self.page, self.previous)
        else:
            await self.store.delete(self.plan_id, self.page)


class ApplyScaleToAllCommand(Command):
    description = "apply scale to all pages"

    def __init__(self, store: ScaleSettingsStore, plan_id: str, setting: ScaleSetting, total_pages: int):
        super().__init__(plan_id)
        self.store = store
        self.plan_id = plan_id
        self.setting = setting
        self.total_pages = total_pages
        self.previous: dict[int, ScaleSetting] = {}
        self.report: Optional[ApplyToAllReport] = None

    async def execute(self) -> ApplyToAllReport:
        self.previous = await self.store.get_all(self.plan_id)
        self.report = await self.store.apply_to_all(self.plan_id, self.setting, self.total_pages)
        return self.report

    async def compensate(self) -> None:
        """Put back the previous setting (or no setting) on every page that was overwritten."""
        if self.report is None:
            return
        for page in self.report.succeeded:
            previous = self.previous.get(page)
            if previous is not None:
                await self.store.set(self.plan_id, page, previous)
            else:
                await self.store.delete(self.plan_id, page)


# ─── Measurement commands ────────────────────────────────────────────────────

class SyncMeasurementsCommand(Command):
    """
    Full sync of the client's annotation list. Removals are explicit
    (deleted_ids) because sync never deletes by absence.
    """
    description = "sync measurements"

    def __init__(self, reconciler: MeasurementReconciler, plan_id: str, user_id: Optional[str],
                 annotations: Sequence[MeasurementAnnotation], deleted_ids: Iterable[str] = ()):
        super().__init__(plan_id)
        self.reconciler = reconciler
        self.plan_id = plan_id
        self.user_id = user_id
        self.annotations = list(annotations)
        self.deleted_ids = list(deleted_ids)
        self.before: dict[str, MeasurementAnnotation] = {}
        self.deleted: list[str] = []
        self.result: Optional[SyncResult] = None

    async def execute(self) -> SyncResult:
        self.before = {a.id: a for a in await self.reconciler.load(self.plan_id, self.user_id)}
        for ann_id in self.deleted_ids:
            if await self.reconciler.delete(self.plan_id, self.user_id, ann_id):
                self.deleted.append(ann_id)
        self.result = await self.reconciler.sync(self.plan_id, self.user_id, self.annotations)
        return self.result

    async def compensate(self) -> None:
        for ann_id in list(self.result.inserted if self.result else []):
            await self.reconciler.delete(self.plan_id, self.user_id, ann_id)
        restore = [self.before[a] for a in self.deleted if a in self.before]
        if self.result:
            restore += [self.before[a] for a in self.result.updated if a in self.before]
        if restore:
            await self.reconciler.sync(self.plan_id, self.user_id, restore)


# ─── Takeoff commands ────────────────────────────────────────────────────────

class PersistTakeoffEditCommand(Command):
    description = "save takeoff edits"

    def __init__(self, aggregator: TakeoffAggregator, aggregated: AggregatedTakeoff, edited_items: Sequence[dict]):
        super().__init__(aggregated.job_id or "takeoff")
        self.aggregator = aggregator
        self.aggregated = aggregated
        self.edited_items = [dict(i) for i in edited_items]
        self.before: list[dict] = []
        self.report: Optional[PersistReport] = None

    async def execute(self) -> PersistReport:
        self.before = copy.deepcopy(self.aggregated.items)
        self.report = await self.aggregator.persist(self.aggregated, self.edited_items)
        return self.report

    async def compensate(self) -> None:
        if self.report is None:
            return
        for plan_id in self.report.succeeded:
            items = [
                strip_aggregation_fields(item, self.aggregated.generated_ids, self.aggregated.renamed_ids)
                for item in self.before if item.get("plan_id") == plan_id
            ]
            await self.aggregator.data.write(
                TAKEOFF_ANALYSIS, self.aggregated.analysis_ids[plan_id], {"items": items}
            )
        self.aggregated.items[:] = self.before


# ─── Runner ──────────────────────────────────────────────────────────────────

class CommandRunner:
    """
    Executes commands and keeps an undo history.

    With per_key_lock=True, commands sharing a key (a plan or job id) run one
    at a time instead of last-write-wins interleaving.
    """

    def __init__(self, per_key_lock: bool = False):
        self.per_key_lock = per_key_lock
        self.history: list[Command] = []
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def _run(self, command: Command) -> Any:
        try:
            result = await command.execute()
        except Exception as e:
            logger.error(f"{command.description} failed for {command.key}: {e}")
            try:
                await command.compensate()
            except Exception as ce:
                logger.error(f"Compensation for {command.description} on {command.key} failed: {ce}")
            raise
        self.history.append(command)
        return result

    async def run(self, command: Command) -> Any:
        if not self.per_key_lock:
            return await self._run(command)
        async with self._lock(command.key):
            return await self._run(command)

    async def undo(self) -> Optional[Command]:
        if not self.history:
            return None
        command = self.history.pop()
        await command.compensate()
        logger.info(f"Undid {command.description} for {command.key}")
        return command


# ─── Plan view state ─────────────────────────────────────────────────────────

@dataclass
class PlanViewState:
    """
    Everything the plan viewer needs to render one plan, as one explicit object.

    Modes: idle, calibrating (collecting the two-point gesture), measuring.
    A third calibration click starts a new gesture from that click.
    """
    plan_id: str
    user_id: Optional[str]
    scales: ScaleSettingsStore
    reconciler: MeasurementReconciler
    mode: str = "idle"
    current_page: int = 1
    gesture: list[Point] = field(default_factory=list)
    scale_settings: dict[int, ScaleSetting] = field(default_factory=dict)
    annotations: list[MeasurementAnnotation] = field(default_factory=list)
    measure_kind: str = "line"

    async def load(self) -> None:
        self.scale_settings = await self.scales.get_all(self.plan_id)
        self.annotations = await self.reconciler.load(self.plan_id, self.user_id)

    def go_to_page(self, page) -> None:
        self.current_page = canonical_page(page)
        self.gesture = []

    # ── calibration ──

    def start_calibration(self) -> None:
        self.mode = "calibrating"
        self.gesture = []

    def add_calibration_point(self, point: Point) -> bool:
        """Returns True once the gesture holds two points and is waiting for a distance."""
        if self.mode != "calibrating":
            raise ValueError("Not calibrating")
        if len(self.gesture) >= 2:
            self.gesture = []
        self.gesture.append(point)
        return len(self.gesture) == 2

    def cancel_calibration(self) -> None:
        self.gesture = []
        self.mode = "idle"

    def complete_calibration(self, distance: str, unit: Optional[str] = None,
                             apply_to_all: bool = False, total_pages: Optional[int] = None) -> Command:
        """
        Resolve the gesture into a ScaleSetting and hand back the command that
        saves it. Raises InvalidCalibrationError (gesture kept) on bad input.
        """
        setting = resolve_calibration(self.gesture, distance, unit)
        self.gesture = []
        self.mode = "idle"
        if apply_to_all:
            if not total_pages:
                raise ValueError("total_pages is required to apply a scale to all pages")
            return ApplyScaleToAllCommand(self.scales, self.plan_id, setting, total_pages)
        return SetScaleCommand(self.scales, self.plan_id, self.current_page, setting)

    def apply_scale(self, page, setting: Optional[ScaleSetting]) -> None:
        page = canonical_page(page)
        if setting is None:
            self.scale_settings.pop(page, None)
        else:
            self.scale_settings[page] = setting

    def apply_scale_report(self, report: ApplyToAllReport, setting: ScaleSetting) -> None:
        for page in report.succeeded:
            self.scale_settings[page] = setting

    def can_measure(self, page=None) -> bool:
        page = self.current_page if page is None else canonical_page(page)
        return page in self.scale_settings

    # ── measuring ──

    def start_measuring(self, kind: str = "line") -> None:
        if kind not in ("line", "area"):
            raise ValueError(f"Unknown measurement kind: {kind}")
        self.mode = "measuring"
        self.measure_kind = kind
        self.gesture = []

    def stop_measuring(self) -> None:
        self.mode = "idle"

    def _sync_command(self, deleted_ids: Iterable[str] = ()) -> SyncMeasurementsCommand:
        return SyncMeasurementsCommand(
            self.reconciler, self.plan_id, self.user_id, list(self.annotations), deleted_ids
        )

    def add_annotation(self, annotation: MeasurementAnnotation) -> SyncMeasurementsCommand:
        self.annotations.append(annotation)
        return self._sync_command()

    def edit_annotation(self, annotation: MeasurementAnnotation) -> SyncMeasurementsCommand:
        for i, existing in enumerate(self.annotations):
            if existing.id == annotation.id:
                self.annotations[i] = annotation
                break
        else:
            raise KeyError(annotation.id)
        return self._sync_command()

    def remove_annotation(self, annotation_id: str) -> SyncMeasurementsCommand:
        self.annotations = [a for a in self.annotations if a.id != annotation_id]
        return self._sync_command(deleted_ids=[annotation_id])

    def apply_sync_result(self, result: SyncResult) -> None:
        self.annotations = list(result.annotations)

    def page_annotations(self, page=None) -> list[MeasurementAnnotation]:
        page = self.current_page if page is None else canonical_page(page)
        return [a for a in self.annotations if a.page_number == page]
