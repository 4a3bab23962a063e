"""Batch-level errors raised by the import engine.

Row-level problems are never raised; they are attached to the row as issue
strings and surface in the preview report.
"""


class WorkbookImportError(Exception):
    """Base class for errors that reject a whole import file."""


class FileFormatError(WorkbookImportError):
    """The upload is not a readable workbook, or it holds no rows."""


class SchemaError(WorkbookImportError):
    """The header row breaks the column contract of the import type."""


class CommitAbortedError(WorkbookImportError):
    """A strict gate blocked the commit before anything was written."""

    def __init__(self, message: str, *, batch_id: str, preview) -> None:
        super().__init__(message)
        self.batch_id = batch_id
        self.preview = preview


class PersistenceError(WorkbookImportError):
    """The store failed during a commit; the transaction was rolled back."""


class CommitTimeoutError(PersistenceError):
    """The commit ran past its deadline and was rolled back."""


class UnknownImportTypeError(WorkbookImportError):
    """No import is registered under the requested name."""
