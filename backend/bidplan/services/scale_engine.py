"""
Scale engine — turns a two-click calibration gesture into a ScaleSetting and
converts pixel geometry into real-world lengths and areas.

Everything here is pure computation. Persisting a resolved scale is the
caller's job (see scale_store.ScaleSettingsStore).

  pixels_per_unit = pixel_distance(p1, p2) / real_distance

Geometry passed to the measurement helpers must be in the same render-scale
pixel space the ScaleSetting was calibrated in.
"""
import re
import math
import logging
from typing import Iterable, Optional, Sequence, Union

from bidplan.config import (
    PIXEL_EPSILON, PRESET_SCALES, SUPPORTED_UNITS, UNIT_ALIASES, UNIT_TO_METERS,
)
from bidplan.models.schemas import MeasurementValues, Point, ScaleSetting

logger = logging.getLogger("bidplan-scale")

PointLike = Union[Point, Sequence[float], dict]

_DISTANCE_RE = re.compile(r"""^\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)\s*([A-Za-z'"]+)?\s*$""")


class InvalidCalibrationError(ValueError):
    """Calibration input rejected before any store write (degenerate gesture, bad distance)."""


def normalize_unit(text: str) -> str:
    unit = UNIT_ALIASES.get(str(text).strip().lower())
    if unit is None:
        raise InvalidCalibrationError(f"Unsupported unit: {text!r} (expected one of {', '.join(SUPPORTED_UNITS)})")
    return unit


def parse_distance(text: Union[str, float, int], default_unit: Optional[str] = None) -> tuple[float, str]:
    """
    Parse a user-entered real-world distance.

    "10 ft" -> (10.0, "ft"), "2.5m" -> (2.5, "m"), "12" with default_unit="in" -> (12.0, "in").
    Raises InvalidCalibrationError for non-numeric, non-finite or non-positive magnitudes,
    unknown units, or a bare number with no default unit.
    """
    if isinstance(text, bool):
        raise InvalidCalibrationError("Distance must be a number")
    if isinstance(text, (int, float)):
        magnitude, unit_text = float(text), None
    else:
        match = _DISTANCE_RE.match(str(text or ""))
        if not match:
            raise InvalidCalibrationError(f"Distance is not a number: {text!r}")
        magnitude, unit_text = float(match.group(1)), match.group(2)

    if not math.isfinite(magnitude) or magnitude <= 0:
        raise InvalidCalibrationError(f"Distance must be a positive number, got {text!r}")

    if unit_text:
        unit = normalize_unit(unit_text)
    elif default_unit:
        unit = normalize_unit(default_unit)
    else:
        raise InvalidCalibrationError(f"No unit given for distance {text!r}")
    return magnitude, unit


def _as_point(p: PointLike) -> Point:
    if isinstance(p, Point):
        return p
    if isinstance(p, dict):
        return Point(x=float(p["x"]), y=float(p["y"]))
    x, y = p
    return Point(x=float(x), y=float(y))


def pixel_distance(a: PointLike, b: PointLike) -> float:
    a, b = _as_point(a), _as_point(b)
    return math.hypot(b.x - a.x, b.y - a.y)


def _fmt_number(value: float) -> str:
    return f"{value:g}"


def resolve_calibration(
    points: Sequence[PointLike],
    distance: Union[str, float, int],
    unit: Optional[str] = None,
) -> ScaleSetting:
    """
    Convert a completed two-point gesture plus a real distance into a ScaleSetting.

    The degenerate-gesture check runs first, so two identical points are
    rejected whatever the distance string says.
    """
    if len(points) != 2:
        raise InvalidCalibrationError(f"Calibration needs exactly 2 points, got {len(points)}")
    p1, p2 = _as_point(points[0]), _as_point(points[1])

    px = pixel_distance(p1, p2)
    if px < PIXEL_EPSILON:
        raise InvalidCalibrationError("Calibration points are identical; pick two distinct points")

    magnitude, resolved_unit = parse_distance(distance, default_unit=unit)
    pixels_per_unit = px / magnitude
    if not math.isfinite(pixels_per_unit) or pixels_per_unit <= 0:
        raise InvalidCalibrationError("Calibration produced an unusable scale")

    setting = ScaleSetting(
        ratio=f"{_fmt_number(magnitude)} {resolved_unit}",
        pixels_per_unit=pixels_per_unit,
        unit=resolved_unit,
        calibration_line=(p1, p2),
    )
    logger.debug(f"Calibrated {px:.2f}px = {magnitude} {resolved_unit} -> {pixels_per_unit:.4f} px/{resolved_unit}")
    return setting


def preset_scale(label: str) -> ScaleSetting:
    """Architectural / metric preset, e.g. "1:100" -> 100 px/m."""
    try:
        pixels_per_unit, unit = PRESET_SCALES[label]
    except KeyError:
        raise InvalidCalibrationError(f"Unknown preset scale: {label!r}")
    return ScaleSetting(ratio=label, pixels_per_unit=pixels_per_unit, unit=unit)


def custom_scale(pixels_per_unit: float, unit: str, ratio: Optional[str] = None) -> ScaleSetting:
    if isinstance(pixels_per_unit, bool) or not isinstance(pixels_per_unit, (int, float)):
        raise InvalidCalibrationError("pixels_per_unit must be a number")
    if not math.isfinite(pixels_per_unit) or pixels_per_unit <= 0:
        raise InvalidCalibrationError("pixels_per_unit must be a positive number")
    unit = normalize_unit(unit)
    return ScaleSetting(
        ratio=ratio or f"{_fmt_number(pixels_per_unit)}px = 1 {unit}",
        pixels_per_unit=float(pixels_per_unit),
        unit=unit,
    )


# ─── Geometry ────────────────────────────────────────────────────────────────

def _pairs(points: Sequence[float]) -> list[tuple[float, float]]:
    return [(float(points[i]), float(points[i + 1])) for i in range(0, len(points) - 1, 2)]


def polyline_lengths(points: Sequence[float], closed: bool = False) -> list[float]:
    """Pixel length of each segment of a flat [x0, y0, x1, y1, ...] polyline."""
    verts = _pairs(points)
    if closed and len(verts) >= 3:
        verts = verts + [verts[0]]
    return [math.hypot(x2 - x1, y2 - y1) for (x1, y1), (x2, y2) in zip(verts, verts[1:])]


def polygon_area(points: Sequence[float]) -> float:
    """Shoelace area in pixels²; 0 for fewer than three vertices."""
    verts = _pairs(points)
    if len(verts) < 3:
        return 0.0
    twice_area = 0.0
    for (x1, y1), (x2, y2) in zip(verts, verts[1:] + verts[:1]):
        twice_area += x1 * y2 - x2 * y1
    return abs(twice_area) / 2.0


def to_real_length(pixels: float, setting: ScaleSetting) -> float:
    return pixels / setting.pixels_per_unit


def to_real_area(pixels_sq: float, setting: ScaleSetting) -> float:
    return pixels_sq / (setting.pixels_per_unit ** 2)


def compute_measurements(
    kind: str, points: Sequence[float], setting: Optional[ScaleSetting]
) -> Optional[MeasurementValues]:
    """
    Real-world values for an annotation. None when the page is uncalibrated:
    the annotation is then geometry-only.
    """
    if setting is None:
        return None
    if kind == "area":
        segments = [to_real_length(px, setting) for px in polyline_lengths(points, closed=True)]
        return MeasurementValues(
            unit=setting.unit,
            segment_lengths=segments,
            total_length=sum(segments),
            area=to_real_area(polygon_area(points), setting),
        )
    segments = [to_real_length(px, setting) for px in polyline_lengths(points)]
    return MeasurementValues(unit=setting.unit, segment_lengths=segments, total_length=sum(segments))


# ─── Units & formatting ──────────────────────────────────────────────────────

def convert_length(value: float, from_unit: str, to_unit: str) -> float:
    from_unit, to_unit = normalize_unit(from_unit), normalize_unit(to_unit)
    return value * UNIT_TO_METERS[from_unit] / UNIT_TO_METERS[to_unit]


def format_length(value: float, unit: str) -> str:
    if unit == "ft":
        feet = math.floor(value)
        inches = round((value - feet) * 12)
        if inches == 12:
            feet, inches = feet + 1, 0
        if feet == 0:
            return f"{inches} in"
        if inches == 0:
            return f"{feet} ft"
        return f"{feet} ft {inches} in"
    if unit == "in":
        return f"{round(value)} in"
    if unit == "m":
        return f"{value:.2f} m"
    if unit == "cm":
        return f"{value:.1f} cm"
    return f"{round(value)} mm"


def format_area(value: float, unit: str) -> str:
    if unit == "ft":
        whole_feet = math.floor(value)
        if whole_feet == 0:
            return f"{value:.2f} sq ft"
        if value - whole_feet < 0.01:
            return f"{whole_feet} sq ft"
        total_sq_in = value * 144
        sq_ft = math.floor(total_sq_in / 144)
        rem_sq_in = round(total_sq_in % 144)
        if rem_sq_in == 144:
            sq_ft, rem_sq_in = sq_ft + 1, 0
        if rem_sq_in == 0:
            return f"{sq_ft} sq ft"
        return f"{sq_ft} sq ft {rem_sq_in} sq in"
    if unit == "in":
        return f"{round(value)} sq in"
    if unit == "m":
        return f"{value:.2f} sq m"
    if unit == "cm":
        return f"{value:.1f} sq cm"
    return f"{round(value)} sq mm"


def summarize_measurements(values: Iterable[Optional[MeasurementValues]]) -> dict:
    """Totals per unit across annotations, skipping geometry-only ones."""
    totals: dict[str, dict[str, float]] = {}
    for v in values:
        if v is None:
            continue
        bucket = totals.setdefault(v.unit, {"length": 0.0, "area": 0.0, "count": 0})
        if v.area is not None:
            bucket["area"] += v.area
        else:
            bucket["length"] += v.total_length or 0.0
        bucket["count"] += 1
    return totals
