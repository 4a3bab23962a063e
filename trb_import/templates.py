"""Blank import workbooks with dropdown lists for the constrained columns."""

from __future__ import annotations

from io import BytesIO

from openpyxl import Workbook
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.datavalidation import DataValidation
from sqlalchemy.orm import Session

from trb_import.cadets import TRAINEE_TYPES
from trb_import.config import settings
from trb_import.lookups import load_taxonomy
from trb_import.preview import get_domain
from trb_import.tasks import DEPARTMENTS, TASK_TRAINEE_TYPES
from trb_import.vessels import CLASS_SOCIETIES

META_SHEET = "_meta"
DEFAULT_SHIP_TYPES = ("Bulk Carrier", "Container Ship", "Oil Tanker", "Gas Carrier")

SHEET_TITLES = {
    "cadets": "Cadets",
    "vessels": "Vessels",
    "tasks": "Tasks",
    "assignments": "Assignments",
}

EXAMPLE_ROWS = {
    "cadets": {
        "full_name": "Anuj Mengaji",
        "email": "anuj@example.com",
        "trainee_type": "DECK_CADET",
        "nationality": "Indian",
        "notes": "Onboarded via batch import",
    },
    "vessels": {
        "imo_number": "IMO 9876543",
        "vessel_name": "MV Ocean Pioneer",
        "vessel_type": "Bulk Carrier",
        "flag_state": "Panama",
    },
    "tasks": {
        "part_number": 1,
        "section_name": "Navigation",
        "title": "Determine position using terrestrial observations",
        "description": "Use cross bearings to fix position on chart.",
        "stcw_reference": "A-II/1",
        "mandatory_for_all": "TRUE",
        "department": "Deck",
    },
    "assignments": {
        "cadet_email": "cadet@example.com",
        "vessel_imo": "9123456",
        "date_joined": "2023-01-01",
        "rank": "Deck Cadet",
    },
}


def _list_choices(db: Session, kind: str) -> dict[str, tuple[str, ...]]:
    if kind == "cadets":
        return {"trainee_type": TRAINEE_TYPES}
    if kind == "vessels":
        ship_types = load_taxonomy(db).names or DEFAULT_SHIP_TYPES
        return {"vessel_type": ship_types, "class_society": CLASS_SOCIETIES}
    if kind == "tasks":
        choices = {"department": DEPARTMENTS, "trainee_type": TASK_TRAINEE_TYPES}
        ship_types = load_taxonomy(db).names
        if ship_types:
            choices["ship_type"] = ship_types
        return choices
    return {}


def build_import_template(db: Session, kind: str) -> bytes:
    domain = get_domain(kind)
    columns = list(domain.allowed_columns)
    choices = _list_choices(db, domain.kind)

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = SHEET_TITLES[domain.kind]
    sheet.append(columns)
    example = EXAMPLE_ROWS[domain.kind]
    sheet.append([example.get(column) for column in columns])
    for idx, column in enumerate(columns, start=1):
        sheet.column_dimensions[get_column_letter(idx)].width = max(15, len(column) + 4)

    if choices:
        meta = workbook.create_sheet(META_SHEET)
        meta.sheet_state = "hidden"
        last_row = settings.template_rows + 1
        for meta_idx, (column, values) in enumerate(choices.items(), start=1):
            meta_letter = get_column_letter(meta_idx)
            for value_idx, value in enumerate(values, start=1):
                meta.cell(row=value_idx, column=meta_idx, value=value)

            target = get_column_letter(columns.index(column) + 1)
            validation = DataValidation(
                type="list",
                formula1=f"{META_SHEET}!${meta_letter}$1:${meta_letter}${len(values)}",
                allow_blank=True,
                showErrorMessage=True,
                errorTitle=f"Invalid {column}",
                error=f"Please select a valid {column} from the dropdown list.",
            )
            validation.add(f"{target}2:{target}{last_row}")
            sheet.add_data_validation(validation)

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
