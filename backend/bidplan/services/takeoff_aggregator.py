"""
Takeoff item aggregator — flattens every plan's AI analysis payload into one
editable job-level item list and writes edits back to the owning plan record.

Payload shapes seen in the wild (all accepted):
  - a JSON string of any of the below
  - a bare list of items
  - {"takeoffs": [...]}, {"items": [...]}, {"results": {"items": [...]}},
    {"line_items": [...]}, {"takeoff": {"items": [...]}}

Items without an id of their own get a positional one (hash of plan id and
index), so the id survives edits, write-back and reload. A payload id already
taken by an earlier item is replaced by the positional id on the aggregated view
and restored on write-back. Minted ids and the plan_id tag only exist on the
aggregated view.
"""
import json
import math
import uuid
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from bidplan.config import (
    AGGREGATION_ONLY_FIELDS, CATEGORY_KEYS, COST_TYPES, DEFAULT_CATEGORY, DEFAULT_ITEM_NAME,
    DEFAULT_ITEM_UNIT, DEFAULT_QUANTITY, DESCRIPTION_KEYS, LEGACY_ITEM_PATHS, LOCATION_KEYS,
    NAME_KEYS, PAGE_KEYS, PLANS, QUANTITY_KEYS, TAKEOFF_ANALYSIS, UNIT_KEYS,
)
from bidplan.services.data_access import DataAccess, DataAccessError
from bidplan.services.perf_monitor import timed_async, tracker

logger = logging.getLogger("bidplan-takeoff")

PASSTHROUGH_FIELDS = (
    "subcategory", "subcontractor", "cost_code", "cost_code_description", "notes",
    "parent_id", "bounding_box", "confidence",
)


class PayloadParseError(ValueError):
    """Analysis payload is not valid JSON or has no recognisable item list."""


# ─── Payload parsing ─────────────────────────────────────────────────────────

def extract_items(payload: Any) -> list[dict]:
    if payload is None:
        return []
    if isinstance(payload, (str, bytes)):
        text = payload.decode() if isinstance(payload, bytes) else payload
        if not text.strip():
            return []
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise PayloadParseError(f"Malformed analysis payload: {e}") from e
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        for path in LEGACY_ITEM_PATHS:
            node: Any = payload
            for key in path:
                node = node.get(key) if isinstance(node, dict) else None
            if isinstance(node, list):
                return [item for item in node if isinstance(item, dict)]
        return []
    raise PayloadParseError(f"Unsupported analysis payload type: {type(payload).__name__}")


def _first(raw: dict, keys: Iterable[str]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def to_number(value: Any) -> Optional[float]:
    """Lenient float coercion: "$1,250.00" -> 1250.0. None for anything unusable, never NaN."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value.strip().replace(",", "").replace("$", "")
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _page(value: Any) -> Optional[int]:
    number = to_number(value)
    if number is None or not number.is_integer() or number < 1:
        return None
    return int(number)


def normalize_item(raw: dict) -> dict:
    """
    Canonical item fields over a copy of the raw item. Unknown keys pass
    through untouched so nothing the analysis produced is lost on write-back.
    """
    item = dict(raw)

    quantity = to_number(_first(raw, QUANTITY_KEYS))
    if quantity is None:
        quantity = DEFAULT_QUANTITY
    unit = str(_first(raw, UNIT_KEYS) or "").strip() or DEFAULT_ITEM_UNIT
    name = str(_first(raw, NAME_KEYS) or "").strip() or DEFAULT_ITEM_NAME
    description = str(_first(raw, DESCRIPTION_KEYS) or "").strip() or name
    category = str(_first(raw, CATEGORY_KEYS) or "").strip().lower() or DEFAULT_CATEGORY

    unit_cost = to_number(_first(raw, ("unit_cost", "unit_price", "cost_per_unit")))
    total_cost = to_number(_first(raw, ("total_cost", "total", "extended_cost")))
    if total_cost is None and unit_cost is not None:
        total_cost = round(quantity * unit_cost, 2)

    cost_type = raw.get("cost_type")
    if isinstance(cost_type, str) and cost_type.lower() in COST_TYPES:
        cost_type = cost_type.lower()
    else:
        cost_type = None

    location = _first(raw, LOCATION_KEYS)

    item.update({
        "name": name,
        "description": description,
        "category": category,
        "quantity": quantity,
        "unit": unit,
        "unit_cost": unit_cost,
        "total_cost": total_cost,
        "cost_type": cost_type,
        "location": str(location) if location is not None else None,
        "page_number": _page(_first(raw, PAGE_KEYS)),
        "user_created": bool(raw.get("user_created", False)),
        "user_modified": bool(raw.get("user_modified", False)),
    })
    for key in PASSTHROUGH_FIELDS:
        item.setdefault(key, None)
    return item


def stable_item_id(plan_id: str, index: int) -> str:
    digest = hashlib.sha1(json.dumps([plan_id, index]).encode()).hexdigest()
    return f"item-{digest[:16]}"


# ─── Aggregation ─────────────────────────────────────────────────────────────

@dataclass
class AggregatedTakeoff:
    items: list[dict] = field(default_factory=list)
    plan_ids: list[str] = field(default_factory=list)
    analysis_ids: dict[str, str] = field(default_factory=dict)    # plan_id -> analysis record id
    skipped_plans: dict[str, str] = field(default_factory=dict)   # plan_id -> parse error
    generated_ids: set[str] = field(default_factory=set)          # ids minted by aggregation
    renamed_ids: dict[str, str] = field(default_factory=dict)     # minted id -> duplicate payload id
    job_id: Optional[str] = None

    def has_record(self, plan_id: str) -> bool:
        return plan_id in self.analysis_ids

    def default_plan(self) -> Optional[str]:
        """First plan with an analysis record, else the first plan of the job."""
        for plan_id in self.plan_ids:
            if self.has_record(plan_id):
                return plan_id
        return self.plan_ids[0] if self.plan_ids else None

    def items_for_plan(self, plan_id: str) -> list[dict]:
        return [item for item in self.items if item.get("plan_id") == plan_id]

    def index_of(self, item_id: str) -> Optional[int]:
        for i, item in enumerate(self.items):
            if item.get("id") == item_id:
                return i
        return None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "items": self.items,
            "plan_ids": self.plan_ids,
            "skipped_plans": self.skipped_plans,
            "summary": summarize(self.items),
        }


def _split_record(value: Any) -> tuple[Optional[str], Any]:
    """An analysis record is a dict carrying both "id" and "items"; anything else is a raw payload."""
    if isinstance(value, dict) and "id" in value and "items" in value:
        return str(value["id"]), value["items"]
    return None, value


def aggregate(records_by_plan: Mapping[str, Any], job_id: Optional[str] = None) -> AggregatedTakeoff:
    """
    Concatenate every plan's items in plan order, tagging each with its plan_id.

    A plan whose payload fails to parse is skipped and listed in skipped_plans;
    the others still aggregate. A None value means the plan has no analysis yet.
    """
    result = AggregatedTakeoff(job_id=job_id)
    seen: set[str] = set()
    for plan_id, value in records_by_plan.items():
        result.plan_ids.append(plan_id)
        if value is None:
            continue
        analysis_id, payload = _split_record(value)
        if analysis_id is not None:
            result.analysis_ids[plan_id] = analysis_id
        try:
            raw_items = extract_items(payload)
        except PayloadParseError as e:
            logger.warning(f"Skipping takeoff for plan {plan_id}: {e}")
            result.skipped_plans[plan_id] = str(e)
            continue

        for index, raw in enumerate(raw_items):
            item = normalize_item(raw)
            raw_id = raw.get("id")
            has_own_id = isinstance(raw_id, str) and bool(raw_id.strip())
            if has_own_id and raw_id not in seen:
                item["id"] = raw_id
            else:
                item["id"] = stable_item_id(plan_id, index)
                result.generated_ids.add(item["id"])
                if has_own_id:
                    logger.warning(f"Duplicate takeoff item id {raw_id} on plan {plan_id}, using {item['id']}")
                    result.renamed_ids[item["id"]] = raw_id
            seen.add(item["id"])
            item["plan_id"] = plan_id
            result.items.append(item)

    logger.info(
        f"Aggregated {len(result.items)} takeoff items from {len(result.plan_ids)} plans"
        + (f" ({len(result.skipped_plans)} skipped)" if result.skipped_plans else "")
    )
    return result


@dataclass
class EditResult:
    owning_plan: str
    item: dict
    items: list[dict]
    created: bool = False


def apply_edit(aggregated: AggregatedTakeoff, edited_item: dict) -> EditResult:
    """
    Replace the item with the same id in place (append when the id is new).

    The owning plan is the item's own plan_id when it belongs to the job,
    otherwise the first plan that already has an analysis record.
    """
    if not aggregated.plan_ids:
        raise ValueError("Job has no plans to own takeoff items")

    edited = dict(edited_item)
    item_id = edited.get("id")
    index = aggregated.index_of(item_id) if item_id else None
    previous = aggregated.items[index] if index is not None else {}
    created = index is None

    owning_plan = edited.get("plan_id")
    if owning_plan not in aggregated.plan_ids:
        owning_plan = previous.get("plan_id")
    if owning_plan not in aggregated.plan_ids:
        owning_plan = aggregated.default_plan()

    item = {**previous, **edited}
    quantity = to_number(item.get("quantity"))
    item["quantity"] = quantity if quantity is not None else previous.get("quantity", DEFAULT_QUANTITY)
    item["unit_cost"] = to_number(item.get("unit_cost"))
    item["total_cost"] = to_number(item.get("total_cost"))
    if item["unit_cost"] is not None and ("quantity" in edited or "unit_cost" in edited or item["total_cost"] is None):
        item["total_cost"] = round(item["quantity"] * item["unit_cost"], 2)

    if created:
        item = {**normalize_item(item), "user_created": True}
        if not item_id:
            item["id"] = str(uuid.uuid4())
    else:
        # cleared or blank text fields keep their previous value
        for key, default in (("name", DEFAULT_ITEM_NAME), ("unit", DEFAULT_ITEM_UNIT), ("category", DEFAULT_CATEGORY)):
            value = str(item.get(key) or "").strip() or str(previous.get(key) or "").strip()
            item[key] = value or default
        item["category"] = item["category"].lower()
        item["description"] = str(item.get("description") or "").strip() or previous.get("description") or item["name"]
        item["user_modified"] = True
    item["plan_id"] = owning_plan

    if created:
        aggregated.items.append(item)
    else:
        aggregated.items[index] = item
    return EditResult(owning_plan=owning_plan, item=item, items=aggregated.items, created=created)


def strip_aggregation_fields(item: dict, generated_ids: set[str],
                             renamed_ids: Optional[Mapping[str, str]] = None) -> dict:
    clean = {k: v for k, v in item.items() if k not in AGGREGATION_ONLY_FIELDS}
    item_id = item.get("id")
    # Ids that came from the payload (or a user-created item) are kept
    if renamed_ids and item_id in renamed_ids:
        clean["id"] = renamed_ids[item_id]
    elif item_id and item_id not in generated_ids:
        clean["id"] = item_id
    return clean


def summarize(items: Iterable[dict]) -> dict:
    by_category: dict[str, dict[str, float]] = {}
    total = 0.0
    count = 0
    for item in items:
        count += 1
        category = item.get("category") or DEFAULT_CATEGORY
        bucket = by_category.setdefault(category, {"count": 0, "total_cost": 0.0})
        bucket["count"] += 1
        cost = to_number(item.get("total_cost"))
        if cost is not None:
            bucket["total_cost"] = round(bucket["total_cost"] + cost, 2)
            total += cost
    return {"item_count": count, "total_cost": round(total, 2), "by_category": by_category}


# ─── Persistence ─────────────────────────────────────────────────────────────

@dataclass
class PersistReport:
    succeeded: list[str] = field(default_factory=list)    # plan ids
    failed: dict[str, str] = field(default_factory=dict)  # plan id -> error
    items: list[dict] = field(default_factory=list)

    @property
    def needs_reload(self) -> bool:
        return bool(self.failed)

    def summary(self) -> str:
        total = len(self.succeeded) + len(self.failed)
        if not self.failed:
            return f"Saved takeoff changes for {total} plan(s)"
        return f"{len(self.succeeded)} of {total} plans saved, please reload and retry"

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "needs_reload": self.needs_reload,
            "summary": self.summary(),
            "items": self.items,
        }


class TakeoffAggregator:
    """Reads and writes plan_takeoff_analysis records through the data-access interface."""

    def __init__(self, data: DataAccess):
        self.data = data

    async def load_records(self, plan_ids: list[str]) -> dict[str, Optional[dict]]:
        """Latest analysis record per plan (None when a plan has not been analysed)."""
        records: dict[str, Optional[dict]] = {plan_id: None for plan_id in plan_ids}
        if not plan_ids:
            return records
        rows = await self.data.read(TAKEOFF_ANALYSIS, {"plan_id": list(plan_ids)}, order_by="created_at")
        for row in rows:
            if row.get("status") in ("queued", "failed"):
                continue
            # ascending created_at, so the last row per plan wins
            records[row["plan_id"]] = row
        return records

    async def load_job(self, job_id: str) -> AggregatedTakeoff:
        plans = await self.data.read(PLANS, {"job_id": job_id}, order_by="created_at")
        plan_ids = [str(p["id"]) for p in plans]
        records = await self.load_records(plan_ids)
        return aggregate(records, job_id=job_id)

    async def save_analysis(self, plan_id: str, payload: Any, job_id: Optional[str] = None,
                            model: Optional[str] = None, summary: Optional[dict] = None) -> str:
        """Store an analysis payload verbatim as the plan's current record."""
        existing = (await self.load_records([plan_id]))[plan_id]
        fields = {"items": payload, "status": "completed", "ai_model": model, "summary": summary}
        if existing is not None:
            await self.data.write(TAKEOFF_ANALYSIS, existing["id"], fields)
            return str(existing["id"])
        return await self.data.insert(TAKEOFF_ANALYSIS, {"plan_id": plan_id, "job_id": job_id, **fields})

    @timed_async
    async def persist(self, aggregated: AggregatedTakeoff, edited_items: Iterable[dict]) -> PersistReport:
        """
        Apply edits and write each owning plan's full item list back, one write per plan.

        A failing plan does not stop the others. Any failure sets needs_reload,
        since the aggregated view no longer matches storage.
        """
        owning: list[str] = []
        for edited in edited_items:
            result = apply_edit(aggregated, edited)
            if result.owning_plan not in owning:
                owning.append(result.owning_plan)

        report = PersistReport()
        for plan_id in owning:
            items = [
                strip_aggregation_fields(item, aggregated.generated_ids, aggregated.renamed_ids)
                for item in aggregated.items_for_plan(plan_id)
            ]
            try:
                if aggregated.has_record(plan_id):
                    await self.data.write(TAKEOFF_ANALYSIS, aggregated.analysis_ids[plan_id], {"items": items})
                else:
                    new_id = await self.data.insert(TAKEOFF_ANALYSIS, {
                        "plan_id": plan_id,
                        "job_id": aggregated.job_id,
                        "items": items,
                        "status": "completed",
                    })
                    aggregated.analysis_ids[plan_id] = new_id
            except DataAccessError as e:
                logger.error(f"Failed to save takeoff items for plan {plan_id}: {e}")
                report.failed[plan_id] = str(e)
                continue
            report.succeeded.append(plan_id)

        report.items = aggregated.items
        if report.failed:
            tracker.record_partial_failure("TakeoffAggregator.persist", len(report.failed))
        logger.info(f"Persisted takeoff edits: {report.summary()}")
        return report
