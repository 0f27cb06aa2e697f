"""
Measurement annotation routes.
The client sends its full annotation list on every change; the server returns
the reconciled set. Deletion is its own endpoint.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from bidplan.api.deps import get_current_user, get_plan, get_reconciler, get_tag_store
from bidplan.models.schemas import MeasurementAnnotation, MeasurementTagRequest
from bidplan.services.data_access import DataAccessError
from bidplan.services.measurement_reconciler import MeasurementReconciler
from bidplan.services.measurement_tags import MeasurementTagStore
from bidplan.services.scale_engine import summarize_measurements

router = APIRouter(
    prefix="/api/plans/{plan_id}",
    tags=["Measurements"],
    dependencies=[Depends(get_current_user), Depends(get_plan)],
)
tag_router = APIRouter(prefix="/api/measurement-tags", tags=["Measurements"])
logger = logging.getLogger("bidplan-measurements")


@router.get("/measurements")
async def list_measurements(
    plan_id: str,
    user_id: str = Depends(get_current_user),
    reconciler: MeasurementReconciler = Depends(get_reconciler),
):
    try:
        annotations = await reconciler.load(plan_id, user_id)
    except DataAccessError as e:
        raise HTTPException(status_code=502, detail=f"Failed to load measurements: {e}")
    return {
        "plan_id": plan_id,
        "annotations": [a.model_dump(mode="json") for a in annotations],
        "totals": summarize_measurements(a.measurements for a in annotations),
    }


@router.put("/measurements")
async def sync_measurements(
    plan_id: str,
    annotations: list[MeasurementAnnotation],
    user_id: str = Depends(get_current_user),
    reconciler: MeasurementReconciler = Depends(get_reconciler),
):
    """Reconcile the client's annotations with storage. 207 when some could not be saved."""
    try:
        result = await reconciler.sync(plan_id, user_id, annotations)
    except DataAccessError as e:
        raise HTTPException(status_code=502, detail=f"Failed to read stored measurements: {e}")
    return JSONResponse(status_code=207 if result.partial else 200, content=result.to_dict())


@router.delete("/measurements/{annotation_id}")
async def delete_measurement(
    plan_id: str,
    annotation_id: str,
    user_id: str = Depends(get_current_user),
    reconciler: MeasurementReconciler = Depends(get_reconciler),
):
    try:
        deleted = await reconciler.delete(plan_id, user_id, annotation_id)
    except DataAccessError as e:
        raise HTTPException(status_code=502, detail=f"Failed to delete measurement: {e}")
    if not deleted:
        raise HTTPException(status_code=404, detail="Measurement not found")
    return {"plan_id": plan_id, "id": annotation_id, "deleted": True}


# ── Tags ──────────────────────────────────────────────────────────────────────

@router.get("/measurement-tags")
async def list_tags(
    plan_id: str,
    user_id: str = Depends(get_current_user),
    tags: MeasurementTagStore = Depends(get_tag_store),
):
    return {"plan_id": plan_id, "tags": [t.model_dump(mode="json") for t in await tags.load(plan_id)]}


@router.post("/measurement-tags", status_code=201)
async def create_tag(
    plan_id: str,
    req: MeasurementTagRequest,
    user_id: str = Depends(get_current_user),
    tags: MeasurementTagStore = Depends(get_tag_store),
):
    try:
        tag = await tags.create(plan_id, user_id, req.name, req.color)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return tag.model_dump(mode="json")


@tag_router.put("/{tag_id}")
async def update_tag(
    tag_id: str,
    req: MeasurementTagRequest,
    user_id: str = Depends(get_current_user),
    tags: MeasurementTagStore = Depends(get_tag_store),
):
    try:
        tag = await tags.update(tag_id, req.name, req.color, user_id=user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if tag is None:
        raise HTTPException(status_code=404, detail="Tag not found")
    return tag.model_dump(mode="json")


@tag_router.delete("/{tag_id}")
async def delete_tag(
    tag_id: str,
    user_id: str = Depends(get_current_user),
    tags: MeasurementTagStore = Depends(get_tag_store),
):
    if not await tags.delete(tag_id, user_id=user_id):
        raise HTTPException(status_code=404, detail="Tag not found")
    return {"id": tag_id, "deleted": True}
