"""Measurement tags: named colours a user attaches to annotations on a plan."""
import re
import logging
from typing import Optional

from bidplan.config import MEASUREMENT_TAGS
from bidplan.models.schemas import MeasurementTag
from bidplan.services.data_access import DataAccess

logger = logging.getLogger("bidplan-measurements")

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


def _validate(name: Optional[str], color: Optional[str]) -> tuple[str, str]:
    name = (name or "").strip()
    if not name:
        raise ValueError("Tag name is required")
    color = (color or "").strip()
    if not _HEX_COLOR.match(color):
        raise ValueError(f"Tag color must look like #rrggbb, got {color!r}")
    return name, color.lower()


def _to_tag(row: dict) -> MeasurementTag:
    return MeasurementTag(
        id=str(row["id"]),
        plan_id=str(row["plan_id"]),
        user_id=row.get("user_id"),
        name=row["name"],
        color=row["color"],
        created_at=row.get("created_at"),
    )


class MeasurementTagStore:
    def __init__(self, data: DataAccess):
        self.data = data

    async def load(self, plan_id: str) -> list[MeasurementTag]:
        rows = await self.data.read(MEASUREMENT_TAGS, {"plan_id": plan_id})
        return sorted((_to_tag(r) for r in rows), key=lambda t: t.name.lower())

    async def get(self, tag_id: str, user_id: Optional[str] = None) -> Optional[MeasurementTag]:
        """With a user_id, another user's tag reads as missing."""
        filter = {"id": tag_id}
        if user_id:
            filter["user_id"] = user_id
        rows = await self.data.read(MEASUREMENT_TAGS, filter)
        return _to_tag(rows[0]) if rows else None

    async def create(self, plan_id: str, user_id: Optional[str], name: str, color: str) -> MeasurementTag:
        name, color = _validate(name, color)
        record = {"plan_id": plan_id, "user_id": user_id, "name": name, "color": color}
        tag_id = await self.data.insert(MEASUREMENT_TAGS, record)
        logger.info(f"Created measurement tag {name!r} on plan {plan_id}")
        return MeasurementTag(id=tag_id, **record)

    async def update(self, tag_id: str, name: str, color: str,
                     user_id: Optional[str] = None) -> Optional[MeasurementTag]:
        name, color = _validate(name, color)
        existing = await self.get(tag_id, user_id)
        if existing is None:
            return None
        await self.data.write(MEASUREMENT_TAGS, tag_id, {"name": name, "color": color})
        return existing.model_copy(update={"name": name, "color": color})

    async def delete(self, tag_id: str, user_id: Optional[str] = None) -> bool:
        if await self.get(tag_id, user_id) is None:
            return False
        await self.data.delete(MEASUREMENT_TAGS, tag_id)
        return True
