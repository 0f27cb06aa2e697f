"""
Plan scale settings routes.
Load, save, calibrate and bulk-apply the per-page pixel-to-real-world scale.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from bidplan.api.deps import get_current_user, get_plan, get_scale_store
from bidplan.models.schemas import (
    ApplyAllRequest, CalibrationRequest, PresetScaleRequest, ScaleSetting,
)
from bidplan.services.data_access import DataAccessError
from bidplan.services.scale_engine import (
    InvalidCalibrationError, custom_scale, preset_scale, resolve_calibration,
)
from bidplan.services.scale_store import ApplyToAllReport, InvalidPageError, ScaleSettingsStore, canonical_page

router = APIRouter(
    prefix="/api/plans/{plan_id}/scale-settings",
    tags=["Scale Settings"],
    dependencies=[Depends(get_current_user), Depends(get_plan)],
)
logger = logging.getLogger("bidplan-scale")


def _page_or_400(page) -> int:
    try:
        return canonical_page(page)
    except InvalidPageError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _report_response(report: ApplyToAllReport) -> JSONResponse:
    return JSONResponse(status_code=200 if report.ok else 207, content=report.to_dict())


async def _save(store: ScaleSettingsStore, plan_id: str, page: int, setting: ScaleSetting) -> dict:
    try:
        saved = await store.set(plan_id, page, setting)
    except DataAccessError as e:
        logger.error(f"Saving scale for plan {plan_id} page {page} failed: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to save scale: {e}")
    return {"plan_id": plan_id, "page": page, "setting": saved.model_dump()}


async def _apply_all(store: ScaleSettingsStore, plan_id: str, setting: ScaleSetting, total_pages: int) -> JSONResponse:
    try:
        report = await store.apply_to_all(plan_id, setting, total_pages)
    except InvalidPageError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DataAccessError as e:
        raise HTTPException(status_code=502, detail=f"Failed to read scale settings: {e}")
    return _report_response(report)


@router.get("")
async def list_scale_settings(plan_id: str, store: ScaleSettingsStore = Depends(get_scale_store)):
    """Every calibrated page of the plan. Pages missing from the map are uncalibrated."""
    try:
        settings = await store.get_all(plan_id)
    except DataAccessError as e:
        raise HTTPException(status_code=502, detail=f"Failed to load scale settings: {e}")
    return {
        "plan_id": plan_id,
        "settings": {str(page): s.model_dump() for page, s in settings.items()},
    }


@router.post("/calibrate")
async def calibrate(plan_id: str, req: CalibrationRequest, store: ScaleSettingsStore = Depends(get_scale_store)):
    """Two-click calibration plus a real distance, saved to one page or all pages."""
    page = _page_or_400(req.page)
    try:
        setting = resolve_calibration(req.points, req.distance, req.unit)
    except InvalidCalibrationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if req.apply_to_all:
        if not req.total_pages:
            raise HTTPException(status_code=400, detail="total_pages is required with apply_to_all")
        return await _apply_all(store, plan_id, setting, req.total_pages)
    return await _save(store, plan_id, page, setting)


@router.post("/apply-all")
async def apply_all(plan_id: str, req: ApplyAllRequest, store: ScaleSettingsStore = Depends(get_scale_store)):
    return await _apply_all(store, plan_id, req.setting, req.total_pages)


@router.put("/{page}")
async def put_scale_setting(plan_id: str, page: str, setting: ScaleSetting,
                            store: ScaleSettingsStore = Depends(get_scale_store)):
    return await _save(store, plan_id, _page_or_400(page), setting)


@router.post("/{page}/preset")
async def put_preset_scale(plan_id: str, page: str, req: PresetScaleRequest,
                           store: ScaleSettingsStore = Depends(get_scale_store)):
    """Architectural / metric preset, or a custom pixels-per-unit value."""
    page_no = _page_or_400(page)
    try:
        if req.preset:
            setting = preset_scale(req.preset)
        elif req.pixels_per_unit is not None and req.unit:
            setting = custom_scale(req.pixels_per_unit, req.unit)
        else:
            raise InvalidCalibrationError("Provide a preset or pixels_per_unit with unit")
    except InvalidCalibrationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await _save(store, plan_id, page_no, setting)


@router.delete("/{page}")
async def delete_scale_setting(plan_id: str, page: str, store: ScaleSettingsStore = Depends(get_scale_store)):
    page_no = _page_or_400(page)
    try:
        deleted = await store.delete(plan_id, page_no)
    except DataAccessError as e:
        raise HTTPException(status_code=502, detail=f"Failed to delete scale: {e}")
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Page {page_no} has no scale setting")
    return {"plan_id": plan_id, "page": page_no, "deleted": True}
