"""
Takeoff core configuration — single source of truth for units, preset scales,
legacy payload keys, tolerances and environment-driven settings.

Import from here in services and routes rather than hardcoding values.
"""
from __future__ import annotations

import os

# ── Units ──────────────────────────────────────────────────────────────────────
SUPPORTED_UNITS: tuple[str, ...] = ("ft", "in", "m", "cm", "mm")

# Aliases accepted when parsing a user-entered distance ("10 feet", "3'", "2 meters")
UNIT_ALIASES: dict[str, str] = {
    "ft": "ft", "foot": "ft", "feet": "ft", "'": "ft",
    "in": "in", "inch": "in", "inches": "in", '"': "in",
    "m": "m", "meter": "m", "meters": "m", "metre": "m", "metres": "m",
    "cm": "cm", "centimeter": "cm", "centimeters": "cm", "centimetre": "cm",
    "mm": "mm", "millimeter": "mm", "millimeters": "mm", "millimetre": "mm",
}

# Conversion factors to metres (base unit)
UNIT_TO_METERS: dict[str, float] = {
    "ft": 0.3048,
    "in": 0.0254,
    "m": 1.0,
    "cm": 0.01,
    "mm": 0.001,
}

DEFAULT_UNIT: str = "ft"


# ── Preset drawing scales ──────────────────────────────────────────────────────
# label -> (pixels_per_unit, unit). Pixel values assume the fixed viewer render scale.
PRESET_SCALES: dict[str, tuple[float, str]] = {
    '1/8" = 1\'': (96.0, "ft"),
    '1/4" = 1\'': (48.0, "ft"),
    '1/2" = 1\'': (24.0, "ft"),
    '1" = 1\'':   (12.0, "ft"),
    "1:100":      (100.0, "m"),
    "1:50":       (50.0, "m"),
    "1:20":       (20.0, "m"),
}


# ── Tolerances ─────────────────────────────────────────────────────────────────
# Two calibration clicks closer than this (in pixels) are treated as the same point
PIXEL_EPSILON: float = 1e-6

MAX_PAGES: int = 2000


# ── Measurement annotations ───────────────────────────────────────────────────
MEASUREMENT_KINDS: tuple[str, ...] = ("line", "area")

# Stored drawing_type values for each annotation kind
DRAWING_TYPE_BY_KIND: dict[str, str] = {"line": "measurement", "area": "area"}

DEFAULT_STROKE_COLOR: str = "#3b82f6"
DEFAULT_LAYER_NAME: str = "measurements"


# ── Takeoff payloads ──────────────────────────────────────────────────────────
# Key paths under which analysis payloads have historically nested their items.
# Checked in order; the first path that resolves to a list wins.
LEGACY_ITEM_PATHS: tuple[tuple[str, ...], ...] = (
    ("takeoffs",),
    ("items",),
    ("results", "items"),
    ("line_items",),
    ("takeoff", "items"),
)

QUANTITY_KEYS: tuple[str, ...] = ("quantity", "qty", "amount", "count")
UNIT_KEYS: tuple[str, ...] = ("unit", "unit_of_measure", "uom")
NAME_KEYS: tuple[str, ...] = ("name", "item_name", "title", "label", "description", "item_description")
DESCRIPTION_KEYS: tuple[str, ...] = ("description", "item_description", "details", "summary", "notes")
CATEGORY_KEYS: tuple[str, ...] = (
    "category", "Category", "trade_category", "discipline", "scope", "segment", "group", "item_type",
)
LOCATION_KEYS: tuple[str, ...] = (
    "location", "location_reference", "location_ref", "area", "room", "zone", "sheet_reference", "sheet",
)
PAGE_KEYS: tuple[str, ...] = ("page_number", "plan_page_number", "pageNumber", "page")

DEFAULT_QUANTITY: float = 1.0
DEFAULT_ITEM_UNIT: str = "unit"
DEFAULT_CATEGORY: str = "other"
DEFAULT_ITEM_NAME: str = "Unnamed Item"

COST_TYPES: tuple[str, ...] = ("labor", "materials", "allowance", "other")

# Fields that only exist on the aggregated job-level view and are never written back
AGGREGATION_ONLY_FIELDS: tuple[str, ...] = ("id", "plan_id")


# ── Collections (generic data-access names) ───────────────────────────────────
JOBS = "jobs"
PLANS = "plans"
SCALE_SETTINGS = "plan_scale_settings"
DRAWINGS = "plan_drawings"
TAKEOFF_ANALYSIS = "plan_takeoff_analysis"
MEASUREMENT_TAGS = "plan_measurement_tags"


# ── Environment ───────────────────────────────────────────────────────────────
ANALYSIS_MAX_INLINE_PAGES: int = int(os.getenv("ANALYSIS_MAX_INLINE_PAGES", "8"))
LLM_PRIMARY_MODEL: str = os.getenv("LLM_PRIMARY_MODEL", "gpt-4o")
LLM_FALLBACK_MODEL: str = os.getenv("LLM_FALLBACK_MODEL", "gemini/gemini-1.5-flash")
