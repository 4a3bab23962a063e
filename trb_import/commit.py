"""Commit: re-run preview, gate, re-check, then write in one transaction."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from trb_import.config import settings
from trb_import.domain import CommitBatch, GatePolicy, ImportDomain, parse_gate_policy
from trb_import.errors import (
    CommitAbortedError,
    CommitTimeoutError,
    PersistenceError,
    WorkbookImportError,
)
from trb_import.lookups import is_unique_violation
from trb_import.preview import build_preview, get_domain
from trb_import.report import (
    CREATABLE_STATUSES,
    CommitOutcome,
    CommitResult,
    CommitRowResult,
    ImportRow,
    PreviewReport,
    RowStatus,
)

logger = logging.getLogger(__name__)

CREATED_WITH_WARNINGS_NOTE = "Some created rows had warnings (override values differ from derived values)."
CONCURRENT_SKIP_ISSUE = "already exists (created by a concurrent import; skipped)"


@dataclass
class PlannedRow:
    row: ImportRow
    create: bool
    issues: list[str] = field(default_factory=list)


def _apply_statement_timeout(db: Session, timeout_seconds: float) -> None:
    if timeout_seconds <= 0 or db.get_bind().dialect.name != "postgresql":
        return
    milliseconds = int(timeout_seconds * 1000)
    db.connection().exec_driver_sql(f"SET LOCAL statement_timeout = {milliseconds}")


def _is_statement_timeout(exc: SQLAlchemyError) -> bool:
    return isinstance(exc, OperationalError) and getattr(exc.orig, "pgcode", None) == "57014"


def _check_deadline(deadline: float | None, timeout_seconds: float) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise CommitTimeoutError(f"Import commit exceeded {timeout_seconds:g}s and was rolled back.")


def plan_commit(db: Session, domain: ImportDomain, preview: PreviewReport) -> list[PlannedRow]:
    """Decide per row whether to create, re-checking existence in this transaction."""
    candidates = [row for row in preview.rows if row.status in CREATABLE_STATUSES]
    late_conflicts = domain.commit_conflicts(db, candidates)

    plan: list[PlannedRow] = []
    for row in preview.rows:
        issues = list(row.issues)
        if row.status not in CREATABLE_STATUSES:
            plan.append(PlannedRow(row=row, create=False, issues=issues))
            continue
        conflict = late_conflicts.get(row.row_number)
        if conflict:
            plan.append(PlannedRow(row=row, create=False, issues=[*issues, conflict]))
            continue
        plan.append(PlannedRow(row=row, create=True, issues=issues))
    return plan


def execute_plan(
    db: Session,
    domain: ImportDomain,
    plan: list[PlannedRow],
    batch: CommitBatch,
    *,
    deadline: float | None = None,
    timeout_seconds: float = 0,
) -> list[CommitRowResult]:
    results: list[CommitRowResult] = []
    for planned in plan:
        row = planned.row
        if not planned.create:
            results.append(_row_result(row, CommitOutcome.SKIPPED, None, planned.issues))
            continue

        _check_deadline(deadline, timeout_seconds)
        ship_types_before = dict(batch.ship_type_cache)
        try:
            with db.begin_nested():
                domain.prepare_insert(db, row, batch)
                created_id = domain.insert(db, row, batch)
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                raise
            # ship types created in the rolled-back savepoint are gone
            batch.ship_type_cache.clear()
            batch.ship_type_cache.update(ship_types_before)
            logger.warning(
                "Batch %s row %s: %s was inserted by another writer; skipping",
                batch.batch_id,
                row.row_number,
                domain.label,
            )
            issue = f"{domain.label} {CONCURRENT_SKIP_ISSUE}"
            results.append(_row_result(row, CommitOutcome.SKIPPED, None, [*planned.issues, issue]))
            continue
        results.append(_row_result(row, CommitOutcome.CREATED, created_id, planned.issues))
    return results


def _row_result(
    row: ImportRow, outcome: CommitOutcome, created_id: int | None, issues: list[str]
) -> CommitRowResult:
    return CommitRowResult(
        row_number=row.row_number,
        preview_status=row.status,
        commit_outcome=outcome,
        created_id=created_id,
        issues=tuple(issues),
    )


def _summarize(
    domain: ImportDomain, preview: PreviewReport, results: list[CommitRowResult]
) -> tuple[dict[str, int], list[str]]:
    created = [r for r in results if r.commit_outcome is CommitOutcome.CREATED]
    skipped = [r for r in results if r.commit_outcome is CommitOutcome.SKIPPED]
    summary = {
        "total": len(results),
        "created": len(created),
        "skipped": len(skipped),
        "fail": preview.summary["fail"],
        "ready": sum(1 for r in created if r.preview_status is RowStatus.READY),
        "ready_with_warnings": sum(
            1 for r in created if r.preview_status is RowStatus.READY_WITH_WARNINGS
        ),
    }

    notes: list[str] = []
    if not created:
        notes.append(f"No new {domain.label} records created (all rows already exist or were skipped).")
    else:
        notes.append(f"{len(created)} {domain.label} records created.")
    duplicates = sum(1 for r in skipped if r.preview_status is not RowStatus.FAIL)
    if duplicates:
        notes.append(f"{duplicates} rows skipped (already exist).")
    if summary["fail"]:
        notes.append(f"{summary['fail']} rows skipped due to validation errors.")
    if summary["ready_with_warnings"]:
        notes.append(CREATED_WITH_WARNINGS_NOTE)
    return summary, notes


def commit_import(
    db: Session,
    kind: str,
    content: bytes,
    *,
    policy: str | GatePolicy | None = None,
    actor_user_id: int | None = None,
    timeout_seconds: float | None = None,
) -> CommitResult:
    """Persist every row that is still new, or nothing at all.

    Raises CommitAbortedError when a strict gate trips, PersistenceError (or
    CommitTimeoutError) when the store fails; the session is rolled back in
    every failure case.
    """
    domain = get_domain(kind)
    gate = parse_gate_policy(policy) or domain.gate_policy
    timeout = settings.commit_timeout_seconds if timeout_seconds is None else timeout_seconds
    deadline = time.monotonic() + timeout if timeout > 0 else None
    batch = CommitBatch(batch_id=str(uuid.uuid4()), actor_user_id=actor_user_id)

    try:
        _apply_statement_timeout(db, timeout)
        preview = build_preview(db, domain, content)
        if gate is GatePolicy.STRICT and preview.summary["fail"] > 0:
            raise CommitAbortedError(
                f"Commit blocked: {preview.summary['fail']} rows failed validation.",
                batch_id=batch.batch_id,
                preview=preview,
            )

        plan = plan_commit(db, domain, preview)
        results = execute_plan(
            db, domain, plan, batch, deadline=deadline, timeout_seconds=timeout
        )
        _check_deadline(deadline, timeout)
        db.commit()
    except CommitAbortedError as exc:
        db.rollback()
        logger.warning("Batch %s (%s) aborted: %s", batch.batch_id, domain.kind, exc)
        raise
    except WorkbookImportError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        if _is_statement_timeout(exc):
            raise CommitTimeoutError(
                f"Import commit exceeded {timeout:g}s and was rolled back."
            ) from exc
        logger.exception("Unexpected database error during %s import commit", domain.kind)
        raise PersistenceError("Unexpected import database error; nothing was saved.") from exc

    summary, notes = _summarize(domain, preview, results)
    logger.info("Committed %s import batch %s: %s", domain.kind, batch.batch_id, summary)
    return CommitResult(
        batch_id=batch.batch_id,
        summary=summary,
        results=tuple(results),
        notes=tuple(notes),
    )
