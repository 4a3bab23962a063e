from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

FAILED_ROWS_NOTE = "Some rows failed validation. Fix and re-upload."
WARNING_ROWS_NOTE = "Some rows have warnings (overrides differ from derived values)."
NO_DATA_ROWS_NOTE = "No data rows found in the first sheet."


class RowStatus(str, enum.Enum):
    READY = "READY"
    READY_WITH_WARNINGS = "READY_WITH_WARNINGS"
    SKIP = "SKIP"
    FAIL = "FAIL"


class CommitOutcome(str, enum.Enum):
    CREATED = "CREATED"
    SKIPPED = "SKIPPED"


CREATABLE_STATUSES = (RowStatus.READY, RowStatus.READY_WITH_WARNINGS)


def json_safe(value):
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


@dataclass
class ImportRow:
    row_number: int
    raw: dict[str, Any]
    normalized: dict[str, Any] = field(default_factory=dict)
    derived: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    status: RowStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        return json_safe(
            {
                "row_number": self.row_number,
                "status": self.status,
                "input": self.raw,
                "normalized": self.normalized,
                "derived": self.derived,
                "issues": list(self.issues),
            }
        )


def classify_row(row: ImportRow, conflict: str | None = None) -> RowStatus:
    """Assign the row status.

    Structural errors win over conflicts so an invalid row is never reported
    as a harmless duplicate.
    """
    if row.errors:
        row.status = RowStatus.FAIL
        row.issues = [*row.errors, *row.warnings]
    elif conflict:
        row.status = RowStatus.SKIP
        row.issues = [conflict, *row.warnings]
    elif row.warnings:
        row.status = RowStatus.READY_WITH_WARNINGS
        row.issues = list(row.warnings)
    else:
        row.status = RowStatus.READY
        row.issues = []
    return row.status


def empty_summary() -> dict[str, int]:
    return {"total": 0, "ready": 0, "ready_with_warnings": 0, "skip": 0, "fail": 0}


@dataclass
class PreviewReport:
    summary: dict[str, int]
    rows: list[ImportRow]
    notes: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": dict(self.summary),
            "rows": [row.to_dict() for row in self.rows],
            "notes": list(self.notes),
        }


def build_preview_report(rows: list[ImportRow], notes: list[str] | None = None) -> PreviewReport:
    summary = empty_summary()
    summary["total"] = len(rows)
    for row in rows:
        summary[row.status.value.lower()] += 1

    report_notes = list(notes or [])
    if summary["fail"] > 0:
        report_notes.append(FAILED_ROWS_NOTE)
    if summary["ready_with_warnings"] > 0:
        report_notes.append(WARNING_ROWS_NOTE)
    return PreviewReport(summary=summary, rows=rows, notes=report_notes)


@dataclass(frozen=True)
class CommitRowResult:
    row_number: int
    preview_status: RowStatus
    commit_outcome: CommitOutcome
    created_id: int | None
    issues: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return json_safe(
            {
                "row_number": self.row_number,
                "preview_status": self.preview_status,
                "commit_outcome": self.commit_outcome,
                "created_id": self.created_id,
                "issues": list(self.issues),
            }
        )


@dataclass(frozen=True)
class CommitResult:
    batch_id: str
    summary: dict[str, int]
    results: tuple[CommitRowResult, ...]
    notes: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "summary": dict(self.summary),
            "results": [r.to_dict() for r in self.results],
            "notes": list(self.notes),
        }
