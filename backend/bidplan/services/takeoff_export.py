"""
Takeoff export — CSV and Excel renderings of the aggregated job takeoff.

Rows are grouped by category, then subcontractor, each group followed by a
subtotal row, with a grand TOTAL row at the end. Sub-items (parent_id set)
are left out of the grouping but still count toward the grand total.
"""
import io
import csv
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import xlsxwriter

from bidplan.services.takeoff_aggregator import to_number

logger = logging.getLogger("bidplan-export")

HEADERS = [
    "Category", "Subcontractor", "Item Name", "Description", "Quantity", "Unit",
    "Unit Cost", "Total Cost", "Location", "Page", "Cost Code", "Notes",
]
COLUMN_WIDTHS = [15, 20, 30, 40, 12, 10, 15, 15, 20, 8, 15, 30]
UNASSIGNED = "Unassigned"


@dataclass
class ItemGroup:
    category: str
    subcontractor: str
    items: list[dict] = field(default_factory=list)
    subtotal: float = 0.0


def item_cost(item: dict) -> float:
    total = to_number(item.get("total_cost"))
    if total is not None:
        return total
    unit_cost = to_number(item.get("unit_cost"))
    quantity = to_number(item.get("quantity"))
    if unit_cost is not None and quantity is not None:
        return unit_cost * quantity
    return 0.0


def _item_page(item: dict) -> Optional[int]:
    if item.get("page_number"):
        return item["page_number"]
    box = item.get("bounding_box")
    if isinstance(box, dict) and box.get("page"):
        return box["page"]
    return None


def format_currency(amount: float) -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def group_items(items: Iterable[dict]) -> list[ItemGroup]:
    groups: dict[tuple[str, str], ItemGroup] = {}
    for item in items:
        if item.get("parent_id"):
            continue
        category = str(item.get("category") or "Other").strip()
        subcontractor = item.get("subcontractor") or UNASSIGNED
        key = (category, subcontractor)
        if key not in groups:
            groups[key] = ItemGroup(category=category, subcontractor=subcontractor)
        group = groups[key]
        group.items.append(item)
        group.subtotal += item_cost(item)

    # insertion order within a category, categories in first-seen order
    ordered: list[ItemGroup] = []
    for category in dict.fromkeys(g.category for g in groups.values()):
        ordered.extend(g for g in groups.values() if g.category == category)
    return ordered


def _item_row(group: ItemGroup, item: dict) -> list:
    return [
        group.category,
        group.subcontractor,
        item.get("name") or "",
        item.get("description") or "",
        to_number(item.get("quantity")) or 0,
        item.get("unit") or "",
        to_number(item.get("unit_cost")),
        item_cost(item),
        item.get("location") or "",
        _item_page(item),
        item.get("cost_code") or "",
        item.get("notes") or "",
    ]


def _subtotal_row(group: ItemGroup) -> list:
    return [group.category, group.subcontractor, "", f"Subtotal: {group.subcontractor}",
            None, "", None, group.subtotal, "", None, "", ""]


def _total_row(total: float) -> list:
    return ["", "", "", "TOTAL", None, "", None, total, "", None, "", ""]


def build_rows(items: list[dict]) -> list[tuple[str, list]]:
    """(kind, cells) rows where kind is "item", "subtotal" or "total"."""
    rows: list[tuple[str, list]] = []
    for group in group_items(items):
        for item in group.items:
            rows.append(("item", _item_row(group, item)))
        rows.append(("subtotal", _subtotal_row(group)))
    rows.append(("total", _total_row(sum(item_cost(i) for i in items))))
    return rows


def export_csv(items: list[dict]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(HEADERS)
    for _, cells in build_rows(items):
        text = list(cells)
        text[4] = "" if cells[4] is None else f"{cells[4]:g}"
        text[6] = "" if cells[6] is None else format_currency(cells[6])
        text[7] = format_currency(cells[7])
        text[9] = "" if cells[9] is None else str(cells[9])
        writer.writerow(text)
    return buf.getvalue()


def export_xlsx(items: list[dict], sheet_name: str = "Takeoff") -> bytes:
    buf = io.BytesIO()
    wb = xlsxwriter.Workbook(buf, {"in_memory": True})
    hdr = wb.add_format({"bold": True, "bg_color": "#14141E", "font_color": "#FFFFFF", "border": 1})
    money = wb.add_format({"num_format": "$#,##0.00"})
    bold = wb.add_format({"bold": True})
    bold_money = wb.add_format({"bold": True, "num_format": "$#,##0.00"})

    ws = wb.add_worksheet(sheet_name)
    for col, width in enumerate(COLUMN_WIDTHS):
        ws.set_column(col, col, width)
    ws.write_row(0, 0, HEADERS, hdr)

    for r, (kind, cells) in enumerate(build_rows(items), 1):
        text_fmt = bold if kind != "item" else None
        money_fmt = bold_money if kind != "item" else money
        for c, value in enumerate(cells):
            if value is None or value == "":
                continue
            if c in (6, 7):
                ws.write_number(r, c, float(value), money_fmt)
            elif isinstance(value, (int, float)):
                ws.write_number(r, c, value, text_fmt)
            else:
                ws.write_string(r, c, str(value), text_fmt)

    wb.close()
    logger.info(f"Exported {len(items)} takeoff items to Excel")
    return buf.getvalue()
