"""
conftest.py — Shared pytest fixtures for the Bidplan takeoff backend test suite.

Every store runs against InMemoryDataAccess, so no database, broker or model
provider is needed. Async store calls are driven with asyncio.run through the
``run`` fixture.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``bidplan.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import asyncio
from datetime import datetime, timedelta, timezone
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any bidplan imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

JOB_ID = "job-1"
PLAN_IDS = ["plan-a", "plan-b", "plan-c"]
USER_ID = "user-1"
T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def run():
    """Run a coroutine to completion: ``run(store.get(...))``."""
    return asyncio.run


@pytest.fixture(autouse=True)
def reset_tracker():
    from bidplan.services.perf_monitor import tracker
    tracker.reset()
    yield
    tracker.reset()


# ---------------------------------------------------------------------------
# Data access
# ---------------------------------------------------------------------------

@pytest.fixture
def data():
    """
    Empty store seeded with one job (job-1) owning three plans, in order
    plan-a, plan-b, plan-c.
    """
    from bidplan.services.data_access import InMemoryDataAccess
    return InMemoryDataAccess(seed={
        "jobs": [{"id": JOB_ID, "name": "Riverside Clinic"}],
        "plans": [
            {"id": plan_id, "job_id": JOB_ID, "title": f"Sheet {i + 1}", "num_pages": 5,
             "created_at": T0 + timedelta(minutes=i)}
            for i, plan_id in enumerate(PLAN_IDS)
        ],
    })


@pytest.fixture
def scale_store(data):
    from bidplan.services.scale_store import ScaleSettingsStore
    return ScaleSettingsStore(data)


@pytest.fixture
def reconciler(data, scale_store):
    from bidplan.services.measurement_reconciler import MeasurementReconciler
    return MeasurementReconciler(data, scale_store)


@pytest.fixture
def aggregator(data):
    from bidplan.services.takeoff_aggregator import TakeoffAggregator
    return TakeoffAggregator(data)


# ---------------------------------------------------------------------------
# Domain objects
# ---------------------------------------------------------------------------

@pytest.fixture
def ten_px_per_ft():
    """10 px per foot: a 100 px line is 10 ft."""
    from bidplan.models.schemas import ScaleSetting
    return ScaleSetting(ratio="10 ft", pixels_per_unit=10.0, unit="ft")


@pytest.fixture
def make_annotation():
    """Factory for MeasurementAnnotation with sensible defaults."""
    from bidplan.models.schemas import MeasurementAnnotation

    def _make(id, points=(0, 0, 100, 0), page_number=1, kind="line", **kwargs):
        return MeasurementAnnotation(id=id, kind=kind, points=list(points), page_number=page_number, **kwargs)
    return _make


@pytest.fixture
def takeoff_payloads():
    """
    Three plans' analysis payloads in three historical shapes:
      plan-a: {"takeoffs": [...]} with legacy field names
      plan-b: malformed JSON text
      plan-c: JSON string of {"results": {"items": [...]}}
    """
    return {
        "plan-a": {"takeoffs": [
            {"item_name": "Drywall", "qty": "1,200", "uom": "SF", "unit_cost": 2.5, "Category": "Interiors"},
            {"name": "Door", "quantity": 4, "unit": "EA", "unit_cost": 350},
        ]},
        "plan-b": '{"items": [ {"name": "broken"',
        "plan-c": '{"results": {"items": [{"title": "Concrete slab", "amount": 30, "unit_of_measure": "CY"}]}}',
    }


@pytest.fixture
def seeded_takeoff(data, takeoff_payloads):
    """One analysis record per plan; plan-b's payload is the malformed one."""
    for i, (plan_id, payload) in enumerate(takeoff_payloads.items()):
        asyncio.run(data.insert("plan_takeoff_analysis", {
            "id": f"analysis-{plan_id}", "plan_id": plan_id, "job_id": JOB_ID, "items": payload,
            "status": "completed", "created_at": T0 + timedelta(minutes=i),
        }))
    return data
