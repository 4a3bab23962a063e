from __future__ import annotations

import re
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from trb_import.domain import CommitBatch, GatePolicy, ImportDomain
from trb_import.lookups import get_or_create_ship_type, load_taxonomy, select_in
from trb_import.models import ShipType, Vessel
from trb_import.normalize import to_code, to_text
from trb_import.report import ImportRow

# Common IACS members and recognised societies, offered as a template dropdown.
CLASS_SOCIETIES = (
    "ABS (American Bureau of Shipping)",
    "BV (Bureau Veritas)",
    "CCS (China Classification Society)",
    "CRS (Croatian Register of Shipping)",
    "DNV (Det Norske Veritas)",
    "IRS (Indian Register of Shipping)",
    "KR (Korean Register)",
    "LR (Lloyd's Register)",
    "NK (Nippon Kaiji Kyokai)",
    "PRS (Polish Register of Shipping)",
    "RINA (Registro Italiano Navale)",
    "Other",
)

_IMO_PREFIX_RE = re.compile(r"^IMO\s*", re.IGNORECASE)
_IMO_RE = re.compile(r"^\d{7}$")


def clean_imo(value: Any) -> str | None:
    raw = to_code(value)
    if raw is None:
        return None
    return _IMO_PREFIX_RE.sub("", raw).strip() or None


class VesselImport(ImportDomain):
    kind = "vessels"
    label = "vessel"
    required_columns = ("imo_number", "vessel_name", "vessel_type")
    optional_columns = ("flag_state", "class_society")
    gate_policy = GatePolicy.LENIENT
    conflict_message = "Vessel already exists in database"
    commit_conflict_message = "Vessel already exists at commit time (skipped)"
    stored_columns = {
        "vessel_name": Vessel.__table__.c.name,
        "vessel_type": ShipType.__table__.c.name,
        "flag_state": Vessel.__table__.c.flag,
        "class_society": Vessel.__table__.c.classification_society,
    }

    def load_context(self, db: Session, rows: list[ImportRow]) -> dict[str, Any]:
        return {"taxonomy": load_taxonomy(db)}

    def normalize(self, row: ImportRow, context: dict[str, Any]) -> None:
        raw = row.raw
        imo_number = clean_imo(raw.get("imo_number"))
        vessel_type = to_text(raw.get("vessel_type"))
        row.normalized = {
            "imo_number": imo_number,
            "vessel_name": to_text(raw.get("vessel_name")),
            "vessel_type": vessel_type,
            "flag_state": to_text(raw.get("flag_state")),
            "class_society": to_text(raw.get("class_society")),
        }
        row.derived = {"ship_type_id": context["taxonomy"].ship_type_id(vessel_type)}

        if not imo_number:
            row.errors.append("Missing IMO Number")
        elif not _IMO_RE.match(imo_number):
            row.errors.append(f'IMO Number "{imo_number}" must be 7 digits')
        if not row.normalized["vessel_name"]:
            row.errors.append("Missing Vessel Name")
        if not vessel_type:
            row.errors.append("Missing Vessel Type")

    def natural_key(self, row: ImportRow):
        return row.normalized.get("imo_number")

    def existing_keys(self, db: Session, rows: list[ImportRow]) -> set:
        imos = sorted({k for k in (self.natural_key(r) for r in rows) if k})
        if not imos:
            return set()
        found = db.execute(
            select_in("SELECT imo_number FROM vessels WHERE imo_number IN :imos", "imos"),
            {"imos": imos},
        ).scalars()
        return {str(v) for v in found}

    def preview_notes(self, rows: list[ImportRow], context: dict[str, Any]) -> list[str]:
        new_types: dict[str, str] = {}
        for row in rows:
            if row.errors or row.derived.get("ship_type_id") is not None:
                continue
            name = row.normalized.get("vessel_type")
            if name:
                new_types.setdefault(name.lower(), name)
        if not new_types:
            return []
        return [f"New vessel types will be created on commit: {', '.join(new_types.values())}"]

    def prepare_insert(self, db: Session, row: ImportRow, batch: CommitBatch) -> None:
        row.derived["ship_type_id"] = get_or_create_ship_type(
            db, row.normalized["vessel_type"], batch.ship_type_cache
        )

    def insert(self, db: Session, row: ImportRow, batch: CommitBatch) -> int:
        values = row.normalized
        vessel_id = db.execute(
            text(
                """
                INSERT INTO vessels (
                  imo_number, name, ship_type_id, flag, classification_society, is_active
                )
                VALUES (
                  :imo_number, :name, :ship_type_id, :flag, :classification_society, :is_active
                )
                RETURNING id
                """
            ),
            {
                "imo_number": values["imo_number"],
                "name": values["vessel_name"],
                "ship_type_id": row.derived["ship_type_id"],
                "flag": values["flag_state"],
                "classification_society": values["class_society"],
                "is_active": True,
            },
        ).scalar_one()
        return int(vessel_id)


VESSELS = VesselImport()
