from __future__ import annotations

from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from trb_import.cadets import TRAINEE_TYPES
from trb_import.domain import CommitBatch, GatePolicy, ImportDomain
from trb_import.lookups import load_taxonomy, lower_values, select_in
from trb_import.models import TaskTemplate
from trb_import.normalize import to_bool, to_int, to_text
from trb_import.report import ImportRow

DEPARTMENTS = ("Deck", "Engine", "Electrical", "Catering", "General")
DEFAULT_DEPARTMENT = "General"
ALL_TRAINEES = "ALL"
TASK_TRAINEE_TYPES = (ALL_TRAINEES, *TRAINEE_TYPES)


def normalize_department(value: Any) -> tuple[str, str | None]:
    """Return the department and, when the input was not recognised, a warning."""
    raw = to_text(value)
    if raw is None:
        return DEFAULT_DEPARTMENT, None
    department = raw[:1].upper() + raw[1:].lower()
    if department in DEPARTMENTS:
        return department, None
    return DEFAULT_DEPARTMENT, f'department "{raw}" is not recognised; defaulted to {DEFAULT_DEPARTMENT}'


class TaskImport(ImportDomain):
    kind = "tasks"
    label = "task"
    required_columns = ("part_number", "title")
    optional_columns = (
        "section_name",
        "description",
        "stcw_reference",
        "mandatory_for_all",
        "ship_type",
        "department",
        "trainee_type",
        "instructions",
        "safety_requirements",
        "evidence_type",
        "verification_method",
        "frequency",
    )
    gate_policy = GatePolicy.STRICT
    conflict_message = "task with this title already exists for the ship type (row will be skipped)"
    commit_conflict_message = "task with this title already exists at commit time (skipped)"
    stored_columns = {
        name: TaskTemplate.__table__.c[name]
        for name in (
            "section_name",
            "title",
            "stcw_reference",
            "evidence_type",
            "verification_method",
            "frequency",
        )
    }

    def load_context(self, db: Session, rows: list[ImportRow]) -> dict[str, Any]:
        return {"taxonomy": load_taxonomy(db)}

    def normalize(self, row: ImportRow, context: dict[str, Any]) -> None:
        raw = row.raw
        department, department_warning = normalize_department(raw.get("department"))
        trainee_type_raw = to_text(raw.get("trainee_type"))
        trainee_type = trainee_type_raw.upper() if trainee_type_raw else ALL_TRAINEES
        ship_type_name = to_text(raw.get("ship_type"))

        row.normalized = {
            "part_number": to_int(raw.get("part_number")),
            "section_name": to_text(raw.get("section_name")),
            "title": to_text(raw.get("title")),
            "description": to_text(raw.get("description")),
            "stcw_reference": to_text(raw.get("stcw_reference")),
            "mandatory_for_all": bool(to_bool(raw.get("mandatory_for_all"))),
            "ship_type_name": ship_type_name,
            "department": department,
            "trainee_type": trainee_type if trainee_type in TASK_TRAINEE_TYPES else None,
            "instructions": to_text(raw.get("instructions")),
            "safety_requirements": to_text(raw.get("safety_requirements")),
            "evidence_type": to_text(raw.get("evidence_type")),
            "verification_method": to_text(raw.get("verification_method")),
            "frequency": to_text(raw.get("frequency")),
        }
        row.derived = {"ship_type_id": context["taxonomy"].ship_type_id(ship_type_name)}

        if row.normalized["part_number"] is None:
            row.errors.append("part_number is required")
        if not row.normalized["title"]:
            row.errors.append("title is required")
        if ship_type_name and row.derived["ship_type_id"] is None:
            row.errors.append(f'Unknown ship type: "{ship_type_name}"')
        if row.normalized["trainee_type"] is None:
            row.errors.append(f"trainee_type must be one of: {', '.join(TASK_TRAINEE_TYPES)}")
        if department_warning:
            row.warnings.append(department_warning)

    def natural_key(self, row: ImportRow):
        title = row.normalized.get("title")
        if not title:
            return None
        return (title.lower(), row.derived.get("ship_type_id"))

    def existing_keys(self, db: Session, rows: list[ImportRow]) -> set:
        titles = lower_values(r.normalized.get("title") for r in rows)
        if not titles:
            return set()
        found = db.execute(
            select_in(
                """
                SELECT LOWER(title) AS title_lower, ship_type_id
                FROM task_templates
                WHERE LOWER(title) IN :titles
                """,
                "titles",
            ),
            {"titles": titles},
        ).mappings()
        return {
            (str(r["title_lower"]), int(r["ship_type_id"]) if r["ship_type_id"] is not None else None)
            for r in found
        }

    def insert(self, db: Session, row: ImportRow, batch: CommitBatch) -> int:
        values = row.normalized
        task_id = db.execute(
            text(
                """
                INSERT INTO task_templates (
                  part_number, section_name, title, description, stcw_reference,
                  mandatory_for_all, ship_type_id, department, trainee_type,
                  instructions, safety_requirements, evidence_type,
                  verification_method, frequency
                )
                VALUES (
                  :part_number, :section_name, :title, :description, :stcw_reference,
                  :mandatory_for_all, :ship_type_id, :department, :trainee_type,
                  :instructions, :safety_requirements, :evidence_type,
                  :verification_method, :frequency
                )
                RETURNING id
                """
            ),
            {
                "part_number": values["part_number"],
                "section_name": values["section_name"],
                "title": values["title"],
                "description": values["description"],
                "stcw_reference": values["stcw_reference"],
                "mandatory_for_all": values["mandatory_for_all"],
                "ship_type_id": row.derived["ship_type_id"],
                "department": values["department"],
                "trainee_type": values["trainee_type"],
                "instructions": values["instructions"],
                "safety_requirements": values["safety_requirements"],
                "evidence_type": values["evidence_type"],
                "verification_method": values["verification_method"],
                "frequency": values["frequency"],
            },
        ).scalar_one()
        return int(task_id)


TASKS = TaskImport()
