"""Preview: the read-only half of an import.

Parse, validate headers, normalize, classify. The commit path calls
`build_preview` on the same bytes so both halves share one set of rules.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from trb_import.assignments import ASSIGNMENTS
from trb_import.cadets import CADETS
from trb_import.domain import ImportDomain
from trb_import.errors import UnknownImportTypeError
from trb_import.report import (
    NO_DATA_ROWS_NOTE,
    ImportRow,
    PreviewReport,
    build_preview_report,
    classify_row,
)
from trb_import.tasks import TASKS
from trb_import.vessels import VESSELS
from trb_import.workbook import parse_workbook, validate_headers

logger = logging.getLogger(__name__)

IMPORT_DOMAINS: dict[str, ImportDomain] = {
    domain.kind: domain for domain in (CADETS, VESSELS, TASKS, ASSIGNMENTS)
}


def get_domain(kind: str) -> ImportDomain:
    domain = IMPORT_DOMAINS.get((kind or "").strip().lower())
    if domain is None:
        allowed = ", ".join(sorted(IMPORT_DOMAINS))
        raise UnknownImportTypeError(f"Unknown import type '{kind}'. Allowed: {allowed}.")
    return domain


def _flag_file_duplicates(
    domain: ImportDomain, rows: list[ImportRow], conflicts: dict[int, str]
) -> None:
    first_seen: dict[object, int] = {}
    for row in rows:
        key = domain.natural_key(row)
        if key is None:
            continue
        if key in first_seen:
            conflicts.setdefault(
                row.row_number,
                f"Duplicate of row {first_seen[key]} in this file (row will be skipped)",
            )
            continue
        first_seen[key] = row.row_number


def build_preview(db: Session, domain: ImportDomain, content: bytes) -> PreviewReport:
    sheet = parse_workbook(content)
    validate_headers(
        sheet.headers,
        required=domain.required_columns,
        allowed=domain.allowed_columns,
    )

    rows = [
        ImportRow(row_number=row_number, raw=sheet.cells_by_column(cells, domain.allowed_columns))
        for row_number, cells in sheet.rows
    ]
    if not rows:
        return build_preview_report([], [NO_DATA_ROWS_NOTE])

    context = domain.load_context(db, rows)
    for row in rows:
        domain.normalize(row, context)
        domain.check_lengths(row)
    domain.cross_row_checks(rows)

    candidates = [row for row in rows if not row.errors]
    conflicts = domain.conflicts(db, candidates)
    _flag_file_duplicates(domain, candidates, conflicts)

    for row in rows:
        classify_row(row, conflicts.get(row.row_number))
    return build_preview_report(rows, domain.preview_notes(rows, context))


def preview_import(db: Session, kind: str, content: bytes) -> PreviewReport:
    domain = get_domain(kind)
    try:
        report = build_preview(db, domain, content)
    finally:
        # nothing a preview did may outlive it
        db.rollback()
    logger.info("Previewed %s import: %s", domain.kind, report.summary)
    return report
