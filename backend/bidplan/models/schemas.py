"""
Pydantic models shared by services and routes.

ScaleSetting and MeasurementAnnotation are the persisted domain shapes; the
*Request models are API bodies only.

Coordinates are page-relative pixels at the viewer's fixed render scale.
Callers must calibrate and measure at the same render scale: a ScaleSetting
captured at one zoom level is not valid for geometry captured at another.
"""
import math
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

Unit = Literal["ft", "in", "m", "cm", "mm"]
MeasurementKind = Literal["line", "area"]


class Point(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float
    y: float


class ScaleSetting(BaseModel):
    """Real-world-to-pixel conversion for one plan page. Replaced wholesale, never patched."""
    model_config = ConfigDict(frozen=True)

    ratio: str = Field(..., min_length=1, description='Display string, e.g. "10 ft"')
    pixels_per_unit: float = Field(..., description="Pixels on the rendered page per one real-world unit")
    unit: Unit
    calibration_line: Optional[tuple[Point, Point]] = None

    @field_validator("pixels_per_unit")
    @classmethod
    def _positive_finite(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("pixels_per_unit must be a positive finite number")
        return v


class DrawingStyle(BaseModel):
    color: str = "#3b82f6"
    stroke_width: float = 2
    opacity: float = 1


class MeasurementValues(BaseModel):
    """Derived real-world values; only present when the page is calibrated."""
    unit: Unit
    segment_lengths: list[float] = []
    total_length: Optional[float] = None
    area: Optional[float] = None


class MeasurementAnnotation(BaseModel):
    id: str = Field(..., min_length=1)
    kind: MeasurementKind = "line"
    points: list[float] = Field(default_factory=list, description="Flat [x0, y0, x1, y1, ...] list")
    page_number: int = Field(..., ge=1)
    plan_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    label: Optional[str] = None
    notes: Optional[str] = None
    tag_id: Optional[str] = None
    style: DrawingStyle = Field(default_factory=DrawingStyle)
    layer_name: str = "measurements"
    is_visible: bool = True
    is_locked: bool = False
    z_index: int = 0
    measurements: Optional[MeasurementValues] = None

    @field_validator("points")
    @classmethod
    def _even_points(cls, v: list[float]) -> list[float]:
        if len(v) % 2:
            raise ValueError("points must hold x,y pairs")
        return [float(p) for p in v]

    def content_key(self) -> dict:
        """Client-owned fields; a difference here means the stored record needs rewriting."""
        return self.model_dump(
            include={
                "kind", "points", "page_number", "label", "notes", "tag_id",
                "style", "layer_name", "is_visible", "is_locked", "z_index",
            }
        )


class MeasurementTag(BaseModel):
    id: str
    plan_id: str
    user_id: Optional[str] = None
    name: str
    color: str
    created_at: Optional[datetime] = None


# ─── Request bodies ──────────────────────────────────────────────────────────

class CalibrationRequest(BaseModel):
    page: int | str
    points: list[Point]
    distance: str = Field(..., description='Real distance between the two points, e.g. "10 ft"')
    unit: Optional[Unit] = None
    apply_to_all: bool = False
    total_pages: Optional[int] = Field(None, ge=1)


class ApplyAllRequest(BaseModel):
    setting: ScaleSetting
    total_pages: int = Field(..., ge=1)


class PresetScaleRequest(BaseModel):
    preset: Optional[str] = None
    pixels_per_unit: Optional[float] = None
    unit: Optional[Unit] = None


class MeasurementTagRequest(BaseModel):
    name: str
    color: str = "#3b82f6"


class AnalyzeRequest(BaseModel):
    page_images: list[str] = Field(..., description="Base64-encoded PNG renders, one per page")
