from __future__ import annotations

from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Iterable

from openpyxl import load_workbook

from trb_import.config import settings
from trb_import.errors import FileFormatError, SchemaError
from trb_import.normalize import normalize_header, to_text

WORKBOOK_EXTENSIONS = (".xlsx", ".xlsm")


@dataclass
class ParsedSheet:
    title: str
    headers: list[str]
    # (header-relative row number, cells in header order)
    rows: list[tuple[int, tuple[Any, ...]]] = field(default_factory=list)

    def cells_by_column(self, cells: tuple[Any, ...], columns: Iterable[str]) -> dict[str, Any]:
        positions = {name: idx for idx, name in enumerate(self.headers) if name}
        out: dict[str, Any] = {}
        for column in columns:
            idx = positions.get(column)
            out[column] = cells[idx] if idx is not None and idx < len(cells) else None
        return out


def ensure_workbook_upload(filename: str, content: bytes) -> None:
    if not filename.lower().endswith(WORKBOOK_EXTENSIONS):
        raise FileFormatError("Upload an .xlsx or .xlsm workbook")
    if not content:
        raise FileFormatError("Uploaded workbook is empty")
    if len(content) > settings.max_upload_bytes:
        raise FileFormatError(
            f"Uploaded workbook is larger than {settings.max_upload_bytes} bytes"
        )


def _is_row_populated(row: tuple[Any, ...]) -> bool:
    return any(to_text(v) for v in row)


def parse_workbook(content: bytes) -> ParsedSheet:
    """Read the first worksheet: header row plus every non-blank data row."""
    if not content:
        raise FileFormatError("Uploaded workbook is empty")
    try:
        workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:
        raise FileFormatError(f"Could not read workbook: {exc}") from exc

    try:
        if not workbook.worksheets:
            raise FileFormatError("Excel file has no sheets.")
        sheet = workbook.worksheets[0]

        headers: list[str] | None = None
        header_index = 0
        rows: list[tuple[int, tuple[Any, ...]]] = []
        for sheet_index, row in enumerate(sheet.iter_rows(values_only=True), start=1):
            if not _is_row_populated(row):
                continue
            if headers is None:
                headers = [normalize_header(v) for v in row]
                header_index = sheet_index
                continue
            rows.append((sheet_index - header_index + 1, tuple(row)))
        title = sheet.title
    finally:
        workbook.close()

    if headers is None:
        raise FileFormatError("No rows found in the first sheet.")
    while headers and not headers[-1]:
        headers.pop()
    return ParsedSheet(title=title, headers=headers, rows=rows)


def validate_headers(
    headers: list[str],
    *,
    required: Iterable[str],
    allowed: Iterable[str],
) -> None:
    allowed_list = list(allowed)
    allowed_set = set(allowed_list)
    seen: set[str] = set()
    for header in headers:
        if not header:
            continue
        if header not in allowed_set:
            raise SchemaError(
                f'Unexpected column "{header}". Allowed columns: {", ".join(allowed_list)}'
            )
        if header in seen:
            raise SchemaError(f'Column "{header}" appears more than once.')
        seen.add(header)

    for column in required:
        if column not in seen:
            raise SchemaError(f'Missing required column "{column}".')
