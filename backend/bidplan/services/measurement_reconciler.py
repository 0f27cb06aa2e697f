"""
Measurement reconciler — keeps a client's working set of measurement
annotations consistent with the plan_drawings collection.

Every add / edit / delete in the viewer triggers a full sync pass:

  1. read the stored set for (plan, user)
  2. split the client set into known ids and pending-local ids
  3. rewrite known annotations whose client-owned fields changed (client wins)
  4. insert pending-local annotations under their client id
  5. return stored ∪ persisted, de-duplicated by id

Absence from the client list never deletes anything; deletion is an explicit
delete() call. Derived lengths/areas are recomputed from the page's
ScaleSetting and are None for uncalibrated pages.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from bidplan.config import (
    DEFAULT_LAYER_NAME, DEFAULT_STROKE_COLOR, DRAWING_TYPE_BY_KIND, DRAWINGS,
)
from bidplan.models.schemas import DrawingStyle, MeasurementAnnotation, ScaleSetting
from bidplan.services.data_access import DataAccess, DataAccessError
from bidplan.services.perf_monitor import timed_async, tracker
from bidplan.services.scale_engine import compute_measurements
from bidplan.services.scale_store import ScaleSettingsStore

logger = logging.getLogger("bidplan-measurements")

MEASUREMENT_DRAWING_TYPES = list(DRAWING_TYPE_BY_KIND.values())


def normalize_json(value: Any) -> Optional[Any]:
    """Stored JSON columns may arrive as text; unparseable text is treated as empty."""
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError as e:
            logger.warning(f"Failed to parse stored JSON value: {e}")
            return None
    return value


@dataclass
class SyncResult:
    annotations: list[MeasurementAnnotation] = field(default_factory=list)
    inserted: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed)

    def summary(self) -> str:
        attempted = len(self.inserted) + len(self.updated) + len(self.failed)
        if not self.failed:
            return f"{attempted} measurement change(s) saved"
        return f"{attempted - len(self.failed)} of {attempted} measurement changes saved, please retry"

    def to_dict(self) -> dict:
        return {
            "annotations": [a.model_dump(mode="json") for a in self.annotations],
            "inserted": self.inserted,
            "updated": self.updated,
            "failed": self.failed,
            "warnings": self.warnings,
            "partial": self.partial,
            "summary": self.summary(),
        }


class MeasurementReconciler:
    def __init__(self, data: DataAccess, scales: Optional[ScaleSettingsStore] = None):
        self.data = data
        self.scales = scales if scales is not None else ScaleSettingsStore(data)

    # ── row mapping ──────────────────────────────────────────────────────────

    @staticmethod
    def _kind_from_row(row: dict) -> str:
        if row.get("drawing_type") == "area":
            return "area"
        data = normalize_json(row.get("measurement_data")) or {}
        if isinstance(data, dict) and data.get("measurement_type") == "area":
            return "area"
        return "line"

    def _row_to_annotation(self, row: dict, settings: dict[int, ScaleSetting]) -> Optional[MeasurementAnnotation]:
        geometry = normalize_json(row.get("geometry")) or {}
        style = normalize_json(row.get("style")) or {}
        if not isinstance(geometry, dict):
            geometry = {}
        if not isinstance(style, dict):
            style = {}
        kind = self._kind_from_row(row)
        try:
            page = int(row["page_number"])
            points = [float(p) for p in geometry.get("points") or []]
            return MeasurementAnnotation(
                id=str(row["id"]),
                kind=kind,
                points=points,
                page_number=page,
                plan_id=row.get("plan_id"),
                user_id=row.get("user_id"),
                created_at=row.get("created_at"),
                label=row.get("label") or None,
                notes=row.get("notes") or None,
                tag_id=row.get("tag_id") or None,
                style=DrawingStyle(
                    color=style.get("color") or DEFAULT_STROKE_COLOR,
                    stroke_width=style.get("stroke_width", style.get("strokeWidth", 2)),
                    opacity=style.get("opacity", 1),
                ),
                layer_name=row.get("layer_name") or DEFAULT_LAYER_NAME,
                is_visible=row.get("is_visible", True) is not False,
                is_locked=bool(row.get("is_locked") or False),
                z_index=int(row.get("z_index") or 0),
                measurements=compute_measurements(kind, points, settings.get(page)),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(f"Skipping malformed drawing row {row.get('id')}: {e}")
            return None

    @staticmethod
    def _annotation_fields(annotation: MeasurementAnnotation) -> dict:
        measurement_data = None
        if annotation.measurements is not None:
            measurement_data = {
                **annotation.measurements.model_dump(),
                "measurement_type": annotation.kind,
            }
        return {
            "page_number": annotation.page_number,
            "drawing_type": DRAWING_TYPE_BY_KIND[annotation.kind],
            "geometry": {"points": list(annotation.points)},
            "style": annotation.style.model_dump(),
            "measurement_data": measurement_data,
            "label": annotation.label,
            "notes": annotation.notes,
            "tag_id": annotation.tag_id,
            "layer_name": annotation.layer_name or DEFAULT_LAYER_NAME,
            "is_visible": annotation.is_visible,
            "is_locked": annotation.is_locked,
            "z_index": annotation.z_index,
        }

    def _with_measurements(self, annotation: MeasurementAnnotation, plan_id: str, user_id: Optional[str],
                           settings: dict[int, ScaleSetting]) -> MeasurementAnnotation:
        return annotation.model_copy(update={
            "plan_id": plan_id,
            "user_id": user_id,
            "measurements": compute_measurements(
                annotation.kind, annotation.points, settings.get(annotation.page_number)
            ),
        })

    # ── operations ───────────────────────────────────────────────────────────

    async def _stored(self, plan_id: str, user_id: Optional[str],
                      settings: dict[int, ScaleSetting]) -> list[MeasurementAnnotation]:
        filter = {"plan_id": plan_id, "drawing_type": MEASUREMENT_DRAWING_TYPES}
        if user_id:
            filter["user_id"] = user_id
        rows = await self.data.read(DRAWINGS, filter, order_by="created_at")
        annotations = []
        for row in rows:
            annotation = self._row_to_annotation(row, settings)
            if annotation is not None:
                annotations.append(annotation)
        return annotations

    async def load(self, plan_id: str, user_id: Optional[str]) -> list[MeasurementAnnotation]:
        settings = await self.scales.get_all(plan_id)
        annotations = await self._stored(plan_id, user_id, settings)
        logger.info(f"Loaded {len(annotations)} measurements for plan {plan_id}")
        return annotations

    @timed_async
    async def sync(self, plan_id: str, user_id: Optional[str],
                   client_annotations: Iterable[MeasurementAnnotation]) -> SyncResult:
        """
        Union the client's annotations with storage.

        Safe to repeat: a second call with the same input performs no writes
        and returns the same set.
        """
        client = [
            a if isinstance(a, MeasurementAnnotation) else MeasurementAnnotation.model_validate(a)
            for a in client_annotations
        ]
        if not user_id:
            logger.warning(f"Measurement sync skipped for plan {plan_id}: no user context")
            return SyncResult(annotations=client, warnings=["No user context; measurements were not saved"])

        settings = await self.scales.get_all(plan_id)
        stored = await self._stored(plan_id, user_id, settings)
        stored_by_id = {a.id: a for a in stored}

        # Later duplicates in the client list replace earlier ones
        incoming: dict[str, MeasurementAnnotation] = {}
        for annotation in client:
            incoming[annotation.id] = self._with_measurements(annotation, plan_id, user_id, settings)

        result = SyncResult()
        merged: dict[str, MeasurementAnnotation] = dict(stored_by_id)

        for ann_id, annotation in incoming.items():
            existing = stored_by_id.get(ann_id)
            if existing is not None:
                annotation = annotation.model_copy(update={"created_at": existing.created_at})
                merged[ann_id] = annotation
                if annotation.content_key() == existing.content_key():
                    continue
                try:
                    await self.data.write(DRAWINGS, ann_id, self._annotation_fields(annotation))
                    result.updated.append(ann_id)
                except DataAccessError as e:
                    logger.error(f"Failed to update measurement {ann_id} on plan {plan_id}: {e}")
                    result.failed[ann_id] = str(e)
                    result.warnings.append(f"Measurement {ann_id} changed locally but could not be saved")
                continue

            created_at = annotation.created_at or datetime.now(timezone.utc)
            record = {
                "id": ann_id,
                "plan_id": plan_id,
                "user_id": user_id,
                "created_at": created_at,
                **self._annotation_fields(annotation),
            }
            try:
                await self.data.insert(DRAWINGS, record)
            except DataAccessError as e:
                logger.error(f"Failed to save measurement {ann_id} on plan {plan_id}: {e}")
                result.failed[ann_id] = str(e)
                result.warnings.append(f"Measurement {ann_id} could not be saved and was dropped")
                continue
            merged[ann_id] = annotation.model_copy(update={"created_at": created_at})
            result.inserted.append(ann_id)

        result.annotations = list(merged.values())
        if result.failed:
            tracker.record_partial_failure("MeasurementReconciler.sync", len(result.failed))
        logger.info(
            f"Synced plan {plan_id} for user {user_id}: {len(result.inserted)} inserted, "
            f"{len(result.updated)} updated, {len(result.failed)} failed, {len(result.annotations)} total"
        )
        return result

    async def delete(self, plan_id: str, user_id: Optional[str], annotation_id: str) -> bool:
        """Explicit user deletion. Returns False when the annotation is not stored for this plan/user."""
        filter = {"plan_id": plan_id, "id": annotation_id}
        if user_id:
            filter["user_id"] = user_id
        rows = await self.data.read(DRAWINGS, filter)
        if not rows:
            return False
        await self.data.delete(DRAWINGS, annotation_id)
        logger.info(f"Deleted measurement {annotation_id} from plan {plan_id}")
        return True
