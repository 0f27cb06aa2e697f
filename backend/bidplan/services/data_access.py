"""
Generic data-access interface used by every takeoff-core component.

Components only ever call read / write / insert / delete on a named collection.
Two backends satisfy the interface:

  InMemoryDataAccess   — dict-backed, used by tests and local dev
  SqlAlchemyDataAccess — async SQLAlchemy over the ORM tables in models.orm_models
"""
import copy
import uuid
import logging
from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from sqlalchemy import select, update, delete as sa_delete
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("bidplan-data")

Record = dict[str, Any]


class DataAccessError(RuntimeError):
    """A read/write/insert/delete against the backing store failed."""


class DataAccess(Protocol):
    async def read(self, collection: str, filter: Optional[Record] = None,
                   order_by: Optional[str] = None) -> list[Record]: ...

    async def write(self, collection: str, id: str, patch: Record) -> None: ...

    async def insert(self, collection: str, record: Record) -> str: ...

    async def delete(self, collection: str, id: str) -> None: ...


def _matches(record: Record, filter: Optional[Record]) -> bool:
    if not filter:
        return True
    for key, expected in filter.items():
        value = record.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _sort_key(field: str):
    # None sorts first so records without the field keep a stable position
    def key(record: Record):
        value = record.get(field)
        return (value is not None, value if value is not None else 0)
    return key


# ─── In-memory backend ───────────────────────────────────────────────────────

class InMemoryDataAccess:
    """
    Dict-backed store. Records are deep-copied in and out so callers never
    share mutable state with the store.

    Failure injection (tests): ``fail_on("write", "plan_scale_settings",
    lambda rec: rec["page_number"] == 3)`` makes matching operations raise
    DataAccessError. For write/delete the predicate sees the stored record
    merged with the patch.
    """

    def __init__(self, seed: Optional[dict[str, list[Record]]] = None):
        self._collections: dict[str, dict[str, Record]] = {}
        self._failures: list[tuple[str, str, Optional[Callable[[Record], bool]]]] = []
        self.calls: list[tuple[str, str, Any]] = []
        for collection, records in (seed or {}).items():
            for record in records:
                rec = copy.deepcopy(record)
                rec.setdefault("id", str(uuid.uuid4()))
                self._collections.setdefault(collection, {})[str(rec["id"])] = rec

    def fail_on(self, op: str, collection: str, match: Optional[Callable[[Record], bool]] = None) -> None:
        self._failures.append((op, collection, match))

    def clear_failures(self) -> None:
        self._failures.clear()

    def _check_failure(self, op: str, collection: str, subject: Record) -> None:
        for f_op, f_collection, match in self._failures:
            if f_op == op and f_collection == collection and (match is None or match(subject)):
                raise DataAccessError(f"{op} on {collection} failed")

    def records(self, collection: str) -> list[Record]:
        """Direct snapshot of a collection (test helper, bypasses failure injection)."""
        return [copy.deepcopy(r) for r in self._collections.get(collection, {}).values()]

    async def read(self, collection, filter=None, order_by=None):
        self.calls.append(("read", collection, filter))
        self._check_failure("read", collection, dict(filter or {}))
        rows = [copy.deepcopy(r) for r in self._collections.get(collection, {}).values() if _matches(r, filter)]
        if order_by:
            rows.sort(key=_sort_key(order_by))
        return rows

    async def write(self, collection, id, patch):
        self.calls.append(("write", collection, id))
        table = self._collections.get(collection, {})
        existing = table.get(str(id))
        if existing is None:
            raise DataAccessError(f"{collection}/{id} not found")
        self._check_failure("write", collection, {**existing, **patch})
        existing.update(copy.deepcopy(patch))
        existing["updated_at"] = datetime.now(timezone.utc)

    async def insert(self, collection, record):
        self.calls.append(("insert", collection, record.get("id")))
        rec = copy.deepcopy(record)
        self._check_failure("insert", collection, rec)
        rec_id = str(rec.get("id") or uuid.uuid4())
        table = self._collections.setdefault(collection, {})
        if rec_id in table:
            raise DataAccessError(f"{collection}/{rec_id} already exists")
        rec["id"] = rec_id
        rec.setdefault("created_at", datetime.now(timezone.utc))
        table[rec_id] = rec
        return rec_id

    async def delete(self, collection, id):
        self.calls.append(("delete", collection, id))
        table = self._collections.get(collection, {})
        existing = table.get(str(id))
        if existing is None:
            raise DataAccessError(f"{collection}/{id} not found")
        self._check_failure("delete", collection, existing)
        del table[str(id)]


# ─── SQLAlchemy backend ──────────────────────────────────────────────────────

def _default_models() -> dict[str, type]:
    from bidplan.models.orm_models import (
        Job, Plan, PlanScaleSetting, PlanDrawing, PlanTakeoffAnalysis, PlanMeasurementTag,
    )
    return {
        "jobs": Job,
        "plans": Plan,
        "plan_scale_settings": PlanScaleSetting,
        "plan_drawings": PlanDrawing,
        "plan_takeoff_analysis": PlanTakeoffAnalysis,
        "plan_measurement_tags": PlanMeasurementTag,
    }


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


class SqlAlchemyDataAccess:
    """Async SQLAlchemy backend. One short-lived session per operation."""

    def __init__(self, session_factory=None, models: Optional[dict[str, type]] = None):
        if session_factory is None:
            from bidplan.db import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._models = models or _default_models()

    def _model(self, collection: str):
        try:
            return self._models[collection]
        except KeyError:
            raise DataAccessError(f"Unknown collection: {collection}")

    @staticmethod
    def _column(model, name: str):
        if name not in model.__table__.columns:
            raise DataAccessError(f"{model.__tablename__} has no column {name}")
        return getattr(model, name)

    @staticmethod
    def _to_record(obj) -> Record:
        return {col.key: _plain(getattr(obj, col.key)) for col in obj.__table__.columns}

    async def read(self, collection, filter=None, order_by=None):
        model = self._model(collection)
        stmt = select(model)
        for key, expected in (filter or {}).items():
            col = self._column(model, key)
            if isinstance(expected, (list, tuple, set, frozenset)):
                stmt = stmt.where(col.in_(list(expected)))
            else:
                stmt = stmt.where(col == expected)
        if order_by:
            stmt = stmt.order_by(self._column(model, order_by))
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [self._to_record(obj) for obj in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"read {collection} failed: {e}")
            raise DataAccessError(str(e)) from e

    async def write(self, collection, id, patch):
        model = self._model(collection)
        for key in patch:
            self._column(model, key)
        try:
            async with self._session_factory() as session:
                result = await session.execute(update(model).where(model.id == id).values(**patch))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"write {collection}/{id} failed: {e}")
            raise DataAccessError(str(e)) from e
        if result.rowcount == 0:
            raise DataAccessError(f"{collection}/{id} not found")

    async def insert(self, collection, record):
        model = self._model(collection)
        for key in record:
            self._column(model, key)
        try:
            async with self._session_factory() as session:
                obj = model(**record)
                session.add(obj)
                await session.flush()
                new_id = str(obj.id)
                await session.commit()
                return new_id
        except SQLAlchemyError as e:
            logger.error(f"insert {collection} failed: {e}")
            raise DataAccessError(str(e)) from e

    async def delete(self, collection, id):
        model = self._model(collection)
        try:
            async with self._session_factory() as session:
                result = await session.execute(sa_delete(model).where(model.id == id))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"delete {collection}/{id} failed: {e}")
            raise DataAccessError(str(e)) from e
        if result.rowcount == 0:
            raise DataAccessError(f"{collection}/{id} not found")
