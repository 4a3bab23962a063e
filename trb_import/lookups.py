from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

TYPE_CODE_LENGTH = 20
AUTO_CREATED_DESCRIPTION = "Auto-created via Excel Import"


def select_in(sql: str, param: str):
    """A text() statement whose `:param` expands to an IN list."""
    return text(sql).bindparams(bindparam(param, expanding=True))


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == "23505":
        return True
    return "unique" in str(orig).lower()


@dataclass(frozen=True)
class TaxonomySnapshot:
    """Ship-type names (lower-cased) to ids, read once per import call."""

    ship_types: Mapping[str, int] = field(default_factory=dict)
    names: tuple[str, ...] = ()

    def ship_type_id(self, name: str | None) -> int | None:
        if not name:
            return None
        return self.ship_types.get(name.strip().lower())


def load_taxonomy(db: Session) -> TaxonomySnapshot:
    rows = db.execute(text("SELECT id, name FROM ship_types ORDER BY name")).mappings().all()
    mapping = {str(r["name"]).strip().lower(): int(r["id"]) for r in rows}
    return TaxonomySnapshot(
        ship_types=MappingProxyType(mapping),
        names=tuple(str(r["name"]) for r in rows),
    )


def lower_values(values: Iterable[str | None]) -> list[str]:
    return sorted({v.lower() for v in values if v})


def find_role_id(db: Session, role_name: str) -> int | None:
    return db.execute(
        text("SELECT id FROM roles WHERE role_name = :role_name"),
        {"role_name": role_name},
    ).scalar()


def _type_code_for(db: Session, name: str) -> str:
    base = re.sub(r"[^A-Z0-9]", "_", name.upper())[:TYPE_CODE_LENGTH]
    code = base
    suffix = 2
    while db.execute(
        text("SELECT 1 FROM ship_types WHERE type_code = :code"), {"code": code}
    ).scalar():
        tail = f"_{suffix}"
        code = base[: TYPE_CODE_LENGTH - len(tail)] + tail
        suffix += 1
    return code


def _find_ship_type_id(db: Session, name: str) -> int | None:
    return db.execute(
        text("SELECT id FROM ship_types WHERE LOWER(name) = :name"),
        {"name": name.lower()},
    ).scalar()


def get_or_create_ship_type(db: Session, name: str, cache: dict[str, int]) -> int:
    """Resolve a ship type by name, creating it when nobody has yet.

    `cache` lives for one commit batch so rows naming the same new type share
    the row created for the first of them.
    """
    key = name.strip().lower()
    if key in cache:
        return cache[key]

    existing = _find_ship_type_id(db, key)
    if existing is not None:
        cache[key] = int(existing)
        return cache[key]

    try:
        with db.begin_nested():
            ship_type_id = db.execute(
                text(
                    """
                    INSERT INTO ship_types (type_code, name, description)
                    VALUES (:type_code, :name, :description)
                    RETURNING id
                    """
                ),
                {
                    "type_code": _type_code_for(db, name.strip()),
                    "name": name.strip(),
                    "description": AUTO_CREATED_DESCRIPTION,
                },
            ).scalar_one()
    except IntegrityError as exc:
        if not is_unique_violation(exc):
            raise
        ship_type_id = _find_ship_type_id(db, key)
        if ship_type_id is None:
            raise
        logger.warning("Ship type %r was created concurrently; reusing id %s", name, ship_type_id)
    else:
        logger.info("Created ship type %r (id %s) during import", name, ship_type_id)

    cache[key] = int(ship_type_id)
    return cache[key]
