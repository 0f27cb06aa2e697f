"""
test_takeoff_export.py — Tests for CSV / Excel takeoff export.

Tests cover:
  - group_items: category then subcontractor grouping, sub-items left out
  - build_rows: subtotal per group, grand TOTAL over every item
  - export_csv: header, currency formatting, quoting
  - export_xlsx: workbook read back with openpyxl
"""

import csv
import io

import pytest

from bidplan.services.takeoff_export import (
    HEADERS,
    build_rows,
    export_csv,
    export_xlsx,
    format_currency,
    group_items,
    item_cost,
)

ITEMS = [
    {"name": "Drywall", "category": "interiors", "subcontractor": "ABC Drywall",
     "quantity": 1200, "unit": "SF", "unit_cost": 2.5, "total_cost": 3000.0, "page_number": 2},
    {"name": "Door", "category": "openings", "quantity": 4, "unit": "EA", "unit_cost": 350},
    {"name": "Paint", "category": "interiors", "subcontractor": "ABC Drywall",
     "quantity": 1200, "unit": "SF", "unit_cost": 0.75, "notes": "two coats, eggshell"},
    {"name": "Hinges", "category": "openings", "parent_id": "door-1", "quantity": 12, "unit_cost": 10},
]


class TestFormatting:

    @pytest.mark.parametrize("amount,expected", [
        (1234.5, "$1,234.50"),
        (0, "$0.00"),
        (-20, "-$20.00"),
        (1_000_000, "$1,000,000.00"),
    ])
    def test_format_currency(self, amount, expected):
        assert format_currency(amount) == expected

    def test_item_cost_falls_back_to_quantity_times_unit_cost(self):
        assert item_cost({"quantity": 4, "unit_cost": 350}) == 1400
        assert item_cost({"total_cost": "$99"}) == 99
        assert item_cost({"name": "TBD"}) == 0.0


class TestGrouping:

    def test_groups_by_category_then_subcontractor(self):
        groups = group_items(ITEMS)
        assert [(g.category, g.subcontractor) for g in groups] == [
            ("interiors", "ABC Drywall"),
            ("openings", "Unassigned"),
        ]
        assert groups[0].subtotal == pytest.approx(3900.0)
        assert [i["name"] for i in groups[1].items] == ["Door"]

    def test_rows_end_with_grand_total_including_sub_items(self):
        rows = build_rows(ITEMS)
        kinds = [kind for kind, _ in rows]
        assert kinds == ["item", "item", "subtotal", "item", "subtotal", "total"]
        total = rows[-1][1]
        assert total[3] == "TOTAL"
        assert total[7] == pytest.approx(3000 + 1400 + 900 + 120)

    def test_empty_takeoff_has_only_total(self):
        assert build_rows([]) == [("total", ["", "", "", "TOTAL", None, "", None, 0, "", None, "", ""])]


class TestExportCsv:

    def test_csv_layout(self):
        rows = list(csv.reader(io.StringIO(export_csv(ITEMS))))
        assert rows[0] == HEADERS
        drywall = rows[1]
        assert drywall[:3] == ["interiors", "ABC Drywall", "Drywall"]
        assert drywall[4] == "1200"
        assert drywall[6] == "$2.50"
        assert drywall[7] == "$3,000.00"
        assert drywall[9] == "2"
        assert rows[3][3] == "Subtotal: ABC Drywall"
        assert rows[3][7] == "$3,900.00"
        assert rows[-1][3] == "TOTAL"
        assert rows[-1][7] == "$5,420.00"

    def test_fields_with_commas_survive(self):
        rows = list(csv.reader(io.StringIO(export_csv(ITEMS))))
        paint = next(r for r in rows if r[2] == "Paint")
        assert paint[11] == "two coats, eggshell"

    def test_every_field_is_quoted(self):
        first_line = export_csv(ITEMS).splitlines()[0]
        assert first_line.startswith('"Category","Subcontractor"')


class TestExportXlsx:

    def test_workbook_reads_back(self):
        openpyxl = pytest.importorskip("openpyxl")
        wb = openpyxl.load_workbook(io.BytesIO(export_xlsx(ITEMS)))
        ws = wb["Takeoff"]
        assert [c.value for c in ws[1]] == HEADERS
        assert ws.cell(row=2, column=3).value == "Drywall"
        assert ws.cell(row=2, column=8).value == pytest.approx(3000.0)
        last = ws.max_row
        assert ws.cell(row=last, column=4).value == "TOTAL"
        assert ws.cell(row=last, column=8).value == pytest.approx(5420.0)
        assert ws.cell(row=last, column=4).font.bold

    def test_custom_sheet_name(self):
        openpyxl = pytest.importorskip("openpyxl")
        wb = openpyxl.load_workbook(io.BytesIO(export_xlsx([], sheet_name="Job 42")))
        assert wb.sheetnames == ["Job 42"]
