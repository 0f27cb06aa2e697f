"""
Job takeoff routes.
Aggregated job-level item list, edit write-back, export, and plan analysis.
"""
import logging
from datetime import date
from typing import Literal
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse

from bidplan.api.deps import get_aggregator, get_current_user, get_job, get_plan
from bidplan.models.schemas import AnalyzeRequest
from bidplan.services.analysis_client import AnalysisError, analyze_plan, submit_batch
from bidplan.services.data_access import DataAccessError
from bidplan.services.takeoff_aggregator import TakeoffAggregator
from bidplan.services.takeoff_export import export_csv, export_xlsx

router = APIRouter(prefix="/api/jobs/{job_id}/takeoff", tags=["Takeoff"],
                   dependencies=[Depends(get_current_user), Depends(get_job)])
analysis_router = APIRouter(prefix="/api/plans/{plan_id}", tags=["Takeoff"],
                            dependencies=[Depends(get_current_user)])
logger = logging.getLogger("bidplan-takeoff")

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@router.get("")
async def get_job_takeoff(job_id: str, aggregator: TakeoffAggregator = Depends(get_aggregator)):
    """All plans' items in plan order. Plans whose payload could not be parsed are listed in skipped_plans."""
    try:
        aggregated = await aggregator.load_job(job_id)
    except DataAccessError as e:
        raise HTTPException(status_code=502, detail=f"Failed to load takeoff: {e}")
    return aggregated.to_dict()


@router.patch("/items")
async def save_takeoff_items(
    job_id: str,
    items: list[dict] = Body(..., description="Edited or new items; each carries its id and plan_id"),
    aggregator: TakeoffAggregator = Depends(get_aggregator),
):
    """
    Apply edits and write each owning plan's item list back.
    207 when some plans failed; the client should reload before editing again.
    """
    try:
        aggregated = await aggregator.load_job(job_id)
        report = await aggregator.persist(aggregated, items)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DataAccessError as e:
        raise HTTPException(status_code=502, detail=f"Failed to load takeoff: {e}")
    return JSONResponse(status_code=207 if report.needs_reload else 200, content=report.to_dict())


@router.get("/export")
async def export_takeoff(
    job_id: str,
    format: Literal["csv", "xlsx"] = Query("csv"),
    aggregator: TakeoffAggregator = Depends(get_aggregator),
):
    try:
        aggregated = await aggregator.load_job(job_id)
    except DataAccessError as e:
        raise HTTPException(status_code=502, detail=f"Failed to load takeoff: {e}")

    stamp = date.today().isoformat()
    if format == "xlsx":
        content = export_xlsx(aggregated.items)
        media_type = XLSX_MEDIA_TYPE
    else:
        content = export_csv(aggregated.items)
        media_type = "text/csv; charset=utf-8"
    filename = f"takeoff-export-{stamp}.{format}"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@analysis_router.post("/analyze")
async def analyze(
    plan_id: str,
    req: AnalyzeRequest,
    plan: dict = Depends(get_plan),
    aggregator: TakeoffAggregator = Depends(get_aggregator),
):
    """Run takeoff analysis inline, or queue it when the plan is too large."""
    if not req.page_images:
        raise HTTPException(status_code=400, detail="No page images supplied")
    try:
        outcome = await analyze_plan(plan_id, req.page_images)
    except AnalysisError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if outcome.status == "too_large":
        try:
            outcome = submit_batch(plan_id, req.page_images, plan.get("job_id"))
        except Exception as e:
            logger.warning(f"Batch channel unavailable for plan {plan_id}: {e}")
        return outcome.to_dict()

    try:
        analysis_id = await aggregator.save_analysis(
            plan_id, outcome.payload, job_id=plan.get("job_id"), model=outcome.model
        )
    except DataAccessError as e:
        raise HTTPException(status_code=502, detail=f"Analysis finished but could not be saved: {e}")
    return {**outcome.to_dict(), "analysis_id": analysis_id}
