"""The contract every import type implements.

The preview and commit pipelines are written once against `ImportDomain`;
cadets, vessels, tasks and assignments only supply their columns, row
normalization, natural key, batched existence query and insert.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Hashable

from sqlalchemy.orm import Session

from trb_import.report import ImportRow


class GatePolicy(str, enum.Enum):
    # any failed row blocks the whole commit
    STRICT = "strict"
    # failed and duplicate rows are left out, the rest proceed
    LENIENT = "lenient"


def parse_gate_policy(value: str | GatePolicy | None) -> GatePolicy | None:
    if value is None or isinstance(value, GatePolicy):
        return value
    cleaned = value.strip().lower()
    if not cleaned:
        return None
    try:
        return GatePolicy(cleaned)
    except ValueError as exc:
        allowed = ", ".join(p.value for p in GatePolicy)
        raise ValueError(f"Invalid gate policy '{value}'. Allowed: {allowed}.") from exc


@dataclass
class CommitBatch:
    """Per-commit state handed to inserts. Never shared between calls."""

    batch_id: str
    actor_user_id: int | None = None
    ship_type_cache: dict[str, int] = field(default_factory=dict)
    role_ids: dict[str, int] = field(default_factory=dict)


class ImportDomain(ABC):
    kind: str = ""
    label: str = "record"
    required_columns: tuple[str, ...] = ()
    optional_columns: tuple[str, ...] = ()
    gate_policy: GatePolicy = GatePolicy.STRICT
    conflict_message: str = "record already exists (row will be skipped)"
    commit_conflict_message: str = "record already exists at commit time (skipped)"
    # normalized field -> table column it is written to, for length checks
    stored_columns: dict[str, Any] = {}

    @property
    def allowed_columns(self) -> tuple[str, ...]:
        return self.required_columns + self.optional_columns

    def load_context(self, db: Session, rows: list[ImportRow]) -> dict[str, Any]:
        """Bulk reads every row of the file needs. Runs once per call."""
        return {}

    @abstractmethod
    def normalize(self, row: ImportRow, context: dict[str, Any]) -> None:
        ...

    def check_lengths(self, row: ImportRow) -> None:
        for name, column in self.stored_columns.items():
            value = row.normalized.get(name)
            limit = getattr(column.type, "length", None)
            if isinstance(value, str) and limit is not None and len(value) > limit:
                row.errors.append(f"{name} exceeds {limit} characters")

    def cross_row_checks(self, rows: list[ImportRow]) -> None:
        """Structural checks that compare rows of the same file."""

    @abstractmethod
    def natural_key(self, row: ImportRow) -> Hashable | None:
        ...

    @abstractmethod
    def existing_keys(self, db: Session, rows: list[ImportRow]) -> set:
        """Natural keys of `rows` already in the store, in one query."""

    def conflicts(self, db: Session, rows: list[ImportRow]) -> dict[int, str]:
        return self._match_existing(db, rows, self.conflict_message)

    def commit_conflicts(self, db: Session, rows: list[ImportRow]) -> dict[int, str]:
        return self._match_existing(db, rows, self.commit_conflict_message)

    def preview_notes(self, rows: list[ImportRow], context: dict[str, Any]) -> list[str]:
        return []

    @abstractmethod
    def insert(self, db: Session, row: ImportRow, batch: CommitBatch) -> int:
        ...

    def prepare_insert(self, db: Session, row: ImportRow, batch: CommitBatch) -> None:
        """Resolve dependent rows inside the savepoint of the primary insert."""

    def _match_existing(self, db: Session, rows: list[ImportRow], message: str) -> dict[int, str]:
        if not rows:
            return {}
        existing = self.existing_keys(db, rows)
        matched: dict[int, str] = {}
        for row in rows:
            key = self.natural_key(row)
            if key is not None and key in existing:
                matched[row.row_number] = message
        return matched
