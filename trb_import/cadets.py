from __future__ import annotations

from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from trb_import.domain import CommitBatch, GatePolicy, ImportDomain
from trb_import.errors import PersistenceError
from trb_import.lookups import find_role_id, lower_values, select_in
from trb_import.models import User
from trb_import.normalize import (
    is_valid_email,
    to_bool,
    to_email,
    to_proper_case,
    to_text,
)
from trb_import.report import ImportRow

CADET_ROLE = "CADET"
# Accounts are created without a usable password until the invite flow runs.
PENDING_PASSWORD_HASH = "TEMP"

TRAINEE_DERIVATION: dict[str, dict[str, Any]] = {
    "DECK_CADET": {"rank_label": "Deck Cadet", "category": "Cadet", "trb_applicable": True},
    "ENGINE_CADET": {"rank_label": "Engine Cadet", "category": "Cadet", "trb_applicable": True},
    "ETO_CADET": {"rank_label": "ETO Cadet", "category": "Cadet", "trb_applicable": True},
    "DECK_RATING": {"rank_label": "Deck Rating", "category": "Rating", "trb_applicable": False},
    "ENGINE_RATING": {"rank_label": "Engine Rating", "category": "Rating", "trb_applicable": False},
}
TRAINEE_TYPES = tuple(TRAINEE_DERIVATION)


def derive_trainee_fields(trainee_type: str | None) -> dict[str, Any]:
    derived = TRAINEE_DERIVATION.get(trainee_type or "")
    if derived is None:
        return {"rank_label": None, "category": None, "trb_applicable": None}
    return dict(derived)


def override_warnings(normalized: dict[str, Any], derived: dict[str, Any]) -> list[str]:
    warnings: list[str] = []
    if derived["rank_label"] is None:
        return warnings
    rank_label = normalized.get("rank_label")
    if rank_label and rank_label != derived["rank_label"]:
        warnings.append(f'rank_label overridden: expected "{derived["rank_label"]}"')
    category = normalized.get("category")
    if category and category != derived["category"]:
        warnings.append(f'category overridden: expected "{derived["category"]}"')
    trb_applicable = normalized.get("trb_applicable")
    if trb_applicable is not None and trb_applicable != derived["trb_applicable"]:
        expected = "true" if derived["trb_applicable"] else "false"
        warnings.append(f"trb_applicable overridden: expected {expected}")
    return warnings


class CadetImport(ImportDomain):
    kind = "cadets"
    label = "cadet"
    required_columns = ("full_name", "email", "trainee_type")
    optional_columns = ("nationality", "notes", "rank_label", "category", "trb_applicable")
    gate_policy = GatePolicy.STRICT
    conflict_message = "email already exists (row will be skipped)"
    commit_conflict_message = "email already exists at commit time (skipped)"
    stored_columns = {
        "full_name": User.__table__.c.full_name,
        "email": User.__table__.c.email,
        "rank_label": User.__table__.c.rank_label,
        "category": User.__table__.c.category,
        "nationality": User.__table__.c.nationality,
    }

    def normalize(self, row: ImportRow, context: dict[str, Any]) -> None:
        raw = row.raw
        email = to_email(raw.get("email"))
        trainee_type_raw = to_text(raw.get("trainee_type"))
        trainee_type = trainee_type_raw.upper() if trainee_type_raw else None

        row.normalized = {
            "full_name": to_text(raw.get("full_name")),
            "email": email,
            "trainee_type": trainee_type if trainee_type in TRAINEE_DERIVATION else None,
            "nationality": to_proper_case(raw.get("nationality")),
            "notes": to_text(raw.get("notes")),
            "rank_label": to_text(raw.get("rank_label")),
            "category": to_text(raw.get("category")),
            "trb_applicable": to_bool(raw.get("trb_applicable")),
        }
        row.derived = derive_trainee_fields(row.normalized["trainee_type"])

        if not row.normalized["full_name"]:
            row.errors.append("full_name is required")
        if not email:
            row.errors.append("email is required")
        elif not is_valid_email(email):
            row.errors.append("email is invalid format")
        if not trainee_type:
            row.errors.append("trainee_type is required")
        elif trainee_type not in TRAINEE_DERIVATION:
            row.errors.append(f"trainee_type must be one of: {', '.join(TRAINEE_TYPES)}")

        row.warnings.extend(override_warnings(row.normalized, row.derived))

    def natural_key(self, row: ImportRow):
        return row.normalized.get("email")

    def existing_keys(self, db: Session, rows: list[ImportRow]) -> set:
        emails = lower_values(self.natural_key(r) for r in rows)
        if not emails:
            return set()
        found = db.execute(
            select_in(
                "SELECT LOWER(email) AS email_lower FROM users WHERE LOWER(email) IN :emails",
                "emails",
            ),
            {"emails": emails},
        ).scalars()
        return {str(v) for v in found if v}

    def prepare_insert(self, db: Session, row: ImportRow, batch: CommitBatch) -> None:
        if CADET_ROLE in batch.role_ids:
            return
        role_id = find_role_id(db, CADET_ROLE)
        if role_id is None:
            raise PersistenceError(f"{CADET_ROLE} role not found")
        batch.role_ids[CADET_ROLE] = int(role_id)

    def insert(self, db: Session, row: ImportRow, batch: CommitBatch) -> int:
        values = row.normalized
        derived = row.derived
        trb_applicable = values["trb_applicable"]
        if trb_applicable is None:
            trb_applicable = derived["trb_applicable"]
        user_id = db.execute(
            text(
                """
                INSERT INTO users (
                  email, full_name, password_hash, role_id,
                  trainee_type, rank_label, category, trb_applicable,
                  nationality, notes
                )
                VALUES (
                  :email, :full_name, :password_hash, :role_id,
                  :trainee_type, :rank_label, :category, :trb_applicable,
                  :nationality, :notes
                )
                RETURNING id
                """
            ),
            {
                "email": values["email"],
                "full_name": values["full_name"],
                "password_hash": PENDING_PASSWORD_HASH,
                "role_id": batch.role_ids[CADET_ROLE],
                "trainee_type": values["trainee_type"],
                "rank_label": values["rank_label"] or derived["rank_label"],
                "category": values["category"] or derived["category"],
                "trb_applicable": trb_applicable,
                "nationality": values["nationality"],
                "notes": values["notes"],
            },
        ).scalar_one()
        return int(user_id)


CADETS = CadetImport()
