from __future__ import annotations

from datetime import date
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from trb_import.cadets import CADET_ROLE
from trb_import.domain import CommitBatch, GatePolicy, ImportDomain
from trb_import.lookups import lower_values, select_in
from trb_import.models import CadetVesselAssignment
from trb_import.normalize import to_date, to_email, to_text
from trb_import.report import ImportRow
from trb_import.vessels import clean_imo

OVERLAP_MESSAGE = "Dates overlap with existing assignment"
COMMIT_OVERLAP_MESSAGE = "Dates overlap with an assignment created since preview (skipped)"


def ranges_overlap(
    start_a: date, end_a: date | None, start_b: date, end_b: date | None
) -> bool:
    """Inclusive date ranges; a missing end means still on board."""
    a_before_b_ends = end_b is None or start_a <= end_b
    b_before_a_ends = end_a is None or start_b <= end_a
    return a_before_b_ends and b_before_a_ends


def _date_with_issue(row: ImportRow, field: str, value: Any) -> date | None:
    parsed = to_date(value)
    raw = to_text(value)
    if parsed is None and raw:
        row.errors.append(f"Invalid date '{raw}' in {field}; use YYYY-MM-DD")
    return parsed


class AssignmentImport(ImportDomain):
    kind = "assignments"
    label = "assignment"
    required_columns = ("cadet_email", "vessel_imo", "date_joined")
    optional_columns = ("date_left", "rank")
    gate_policy = GatePolicy.STRICT
    conflict_message = "assignment already exists (row will be skipped)"
    commit_conflict_message = "assignment already exists at commit time (skipped)"
    stored_columns = {"rank": CadetVesselAssignment.__table__.c.rank}

    def _load_cadets(self, db: Session, emails: list[str]) -> dict[str, int]:
        if not emails:
            return {}
        rows = db.execute(
            select_in(
                """
                SELECT u.id, LOWER(u.email) AS email_lower
                FROM users u
                JOIN roles r ON r.id = u.role_id
                WHERE r.role_name = :role_name
                  AND LOWER(u.email) IN :emails
                """,
                "emails",
            ),
            {"emails": emails, "role_name": CADET_ROLE},
        ).mappings()
        return {str(r["email_lower"]): int(r["id"]) for r in rows}

    def _load_vessels(self, db: Session, imos: list[str]) -> dict[str, int]:
        if not imos:
            return {}
        rows = db.execute(
            select_in("SELECT id, imo_number FROM vessels WHERE imo_number IN :imos", "imos"),
            {"imos": imos},
        ).mappings()
        return {str(r["imo_number"]): int(r["id"]) for r in rows}

    def _load_assignments(self, db: Session, cadet_ids: list[int]) -> list[dict[str, Any]]:
        if not cadet_ids:
            return []
        rows = db.execute(
            select_in(
                """
                SELECT id, cadet_id, vessel_id, date_joined, date_left, status
                FROM cadet_vessel_assignments
                WHERE cadet_id IN :cadet_ids
                """,
                "cadet_ids",
            ),
            {"cadet_ids": cadet_ids},
        ).mappings()
        return [
            {
                "id": int(r["id"]),
                "cadet_id": int(r["cadet_id"]),
                "vessel_id": int(r["vessel_id"]),
                "date_joined": to_date(r["date_joined"]),
                "date_left": to_date(r["date_left"]),
                "status": r["status"],
            }
            for r in rows
        ]

    def load_context(self, db: Session, rows: list[ImportRow]) -> dict[str, Any]:
        emails = lower_values(to_email(r.raw.get("cadet_email")) for r in rows)
        imos = sorted({i for i in (clean_imo(r.raw.get("vessel_imo")) for r in rows) if i})
        cadets = self._load_cadets(db, emails)
        return {
            "cadets": cadets,
            "vessels": self._load_vessels(db, imos),
            "assignments": self._load_assignments(db, sorted(set(cadets.values()))),
        }

    def normalize(self, row: ImportRow, context: dict[str, Any]) -> None:
        raw = row.raw
        email = to_email(raw.get("cadet_email"))
        imo = clean_imo(raw.get("vessel_imo"))
        date_joined = _date_with_issue(row, "date_joined", raw.get("date_joined"))
        date_left = _date_with_issue(row, "date_left", raw.get("date_left"))
        cadet_id = context["cadets"].get(email) if email else None
        vessel_id = context["vessels"].get(imo) if imo else None

        row.normalized = {
            "email": email,
            "vessel_imo": imo,
            "date_joined": date_joined,
            "date_left": date_left,
            "rank": to_text(raw.get("rank")),
        }
        row.derived = {"cadet_id": cadet_id, "vessel_id": vessel_id}

        if not email:
            row.errors.append("Missing email")
        elif cadet_id is None:
            row.errors.append("Cadet not found")
        if not imo:
            row.errors.append("Missing IMO")
        elif vessel_id is None:
            row.errors.append("Vessel not found")
        if date_joined is None and not to_text(raw.get("date_joined")):
            row.errors.append("Missing Join Date")
        if date_joined and date_left and date_left < date_joined:
            row.errors.append("date_left is before date_joined")

        if row.errors or cadet_id is None:
            return
        key = self.natural_key(row)
        for existing in context["assignments"]:
            if existing["cadet_id"] != cadet_id or existing["status"] != "ACTIVE":
                continue
            if (existing["cadet_id"], existing["vessel_id"], existing["date_joined"]) == key:
                # the same assignment imported earlier; classified as a duplicate
                continue
            if ranges_overlap(date_joined, date_left, existing["date_joined"], existing["date_left"]):
                row.errors.append(OVERLAP_MESSAGE)
                break

    def cross_row_checks(self, rows: list[ImportRow]) -> None:
        accepted: list[ImportRow] = []
        for row in rows:
            if row.errors:
                continue
            for earlier in accepted:
                if earlier.derived["cadet_id"] != row.derived["cadet_id"]:
                    continue
                if self.natural_key(earlier) == self.natural_key(row):
                    continue
                if ranges_overlap(
                    row.normalized["date_joined"],
                    row.normalized["date_left"],
                    earlier.normalized["date_joined"],
                    earlier.normalized["date_left"],
                ):
                    row.errors.append(f"Dates overlap with row {earlier.row_number} in this file")
                    break
            else:
                # rows with a date_left are stored COMPLETED and never block
                if row.normalized["date_left"] is None:
                    accepted.append(row)

    def natural_key(self, row: ImportRow):
        cadet_id = row.derived.get("cadet_id")
        vessel_id = row.derived.get("vessel_id")
        date_joined = row.normalized.get("date_joined")
        if cadet_id is None or vessel_id is None or date_joined is None:
            return None
        return (cadet_id, vessel_id, date_joined)

    def existing_keys(self, db: Session, rows: list[ImportRow]) -> set:
        cadet_ids = sorted({r.derived["cadet_id"] for r in rows if r.derived.get("cadet_id")})
        return {
            (a["cadet_id"], a["vessel_id"], a["date_joined"])
            for a in self._load_assignments(db, cadet_ids)
        }

    def commit_conflicts(self, db: Session, rows: list[ImportRow]) -> dict[int, str]:
        cadet_ids = sorted({r.derived["cadet_id"] for r in rows if r.derived.get("cadet_id")})
        current = self._load_assignments(db, cadet_ids)
        keys = {(a["cadet_id"], a["vessel_id"], a["date_joined"]) for a in current}

        conflicts: dict[int, str] = {}
        for row in rows:
            key = self.natural_key(row)
            if key in keys:
                conflicts[row.row_number] = self.commit_conflict_message
                continue
            for existing in current:
                if existing["cadet_id"] != row.derived["cadet_id"] or existing["status"] != "ACTIVE":
                    continue
                if ranges_overlap(
                    row.normalized["date_joined"],
                    row.normalized["date_left"],
                    existing["date_joined"],
                    existing["date_left"],
                ):
                    conflicts[row.row_number] = COMMIT_OVERLAP_MESSAGE
                    break
        return conflicts

    def insert(self, db: Session, row: ImportRow, batch: CommitBatch) -> int:
        values = row.normalized
        assignment_id = db.execute(
            text(
                """
                INSERT INTO cadet_vessel_assignments (
                  cadet_id, vessel_id, date_joined, date_left, status, rank, assigned_by_user_id
                )
                VALUES (
                  :cadet_id, :vessel_id, :date_joined, :date_left, :status, :rank, :assigned_by_user_id
                )
                RETURNING id
                """
            ),
            {
                "cadet_id": row.derived["cadet_id"],
                "vessel_id": row.derived["vessel_id"],
                "date_joined": values["date_joined"],
                "date_left": values["date_left"],
                "status": "COMPLETED" if values["date_left"] else "ACTIVE",
                "rank": values["rank"],
                "assigned_by_user_id": batch.actor_user_id,
            },
        ).scalar_one()
        return int(assignment_id)


ASSIGNMENTS = AssignmentImport()
