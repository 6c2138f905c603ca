"""
Batch transfer: move one table's rows into the destination in fixed-size
chunks, skipping rows whose primary key already exists.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from relmigrate import DEFAULT_BATCH_SIZE
from relmigrate.catalog import Row, TableDescriptor
from relmigrate.stores import StoreError, StoreWriteError

ProgressCallback = Callable[[str, int, int], None]


class MigrationCancelled(RuntimeError):
    """The run was asked to stop; raised between chunks."""

    def __init__(self, message: str, report: Optional["TableReport"] = None):
        super().__init__(message)
        self.report = report


# Table statuses
PENDING = "pending"
MIGRATED = "migrated"
EMPTY = "empty"
SKIPPED = "skipped"
FAILED = "failed"
CANCELLED = "cancelled"

PAGINATED = "paginated"
PRE_ORDERED = "pre-ordered"


@dataclass
class TableReport:
    table: str
    total_source: int = 0
    inserted: int = 0
    skipped_existing: int = 0
    cycle_warnings: int = 0
    status: str = PENDING
    mode: str = ""
    message: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.inserted + self.skipped_existing

    @property
    def failed(self) -> bool:
        return self.status == FAILED


def _attach_partial(report: TableReport, error: StoreError):
    report.status = FAILED
    report.message = str(error)
    error.report = report


def _check_batch_size(batch_size: int):
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")


def _write_chunk(destination, table: TableDescriptor, chunk: list[Row], report: TableReport,
                 cancel, on_progress: Optional[ProgressCallback]) -> bool:
    """Insert one chunk and update the report. Returns False if the table failed."""
    if cancel is not None and cancel.is_set():
        report.status = CANCELLED
        report.message = f"cancelled after {report.processed}/{report.total_source} rows"
        raise MigrationCancelled(f"Migration cancelled during {table.name}", report)

    first = report.processed + 1
    try:
        inserted = destination.bulk_insert(table, chunk, skip_existing=True)
    except StoreWriteError as e:
        report.status = FAILED
        report.message = (
            f"batch rows {first}..{first + len(chunk) - 1} "
            f"({table.primary_key} {e.first_key!r}..{e.last_key!r}): {e}"
        )
        return False

    # Some drivers report -1 when the count is unknown
    if inserted < 0:
        inserted = len(chunk)
    report.inserted += inserted
    report.skipped_existing += len(chunk) - inserted
    if on_progress is not None:
        on_progress(table.name, report.processed, report.total_source)
    return True


def transfer_paginated(source, destination, table: TableDescriptor,
                       batch_size: int = DEFAULT_BATCH_SIZE, cancel=None,
                       on_progress: Optional[ProgressCallback] = None,
                       total: Optional[int] = None) -> TableReport:
    """Stream a table page by page, using the last seen primary key as cursor.

    Stops on an empty page or one shorter than ``batch_size``.
    """
    _check_batch_size(batch_size)
    report = TableReport(table=table.name, mode=PAGINATED)
    report.total_source = source.count(table) if total is None else total
    if report.total_source == 0:
        report.status = EMPTY
        return report

    cursor = None
    try:
        while True:
            rows = source.find_page(table, batch_size, cursor)
            if not rows:
                break
            if not _write_chunk(destination, table, rows, report, cancel, on_progress):
                return report
            cursor = rows[-1][table.primary_key]
            if len(rows) < batch_size:
                break
    except StoreError as e:
        _attach_partial(report, e)
        raise

    report.status = MIGRATED
    return report


def transfer_rows(destination, table: TableDescriptor, rows: list[Row],
                  batch_size: int = DEFAULT_BATCH_SIZE, cancel=None,
                  on_progress: Optional[ProgressCallback] = None) -> TableReport:
    """Write an already ordered row list in consecutive chunks."""
    _check_batch_size(batch_size)
    report = TableReport(table=table.name, mode=PRE_ORDERED, total_source=len(rows))
    if not rows:
        report.status = EMPTY
        return report

    try:
        for start in range(0, len(rows), batch_size):
            chunk = rows[start:start + batch_size]
            if not _write_chunk(destination, table, chunk, report, cancel, on_progress):
                return report
    except StoreError as e:
        _attach_partial(report, e)
        raise

    report.status = MIGRATED
    return report
