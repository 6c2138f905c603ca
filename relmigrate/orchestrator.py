"""
Migration orchestrator: resolve table order, pick a transfer strategy per
table, and collect the run report.
"""

from dataclasses import dataclass, field, replace
from typing import Optional

from relmigrate import console, DEFAULT_BATCH_SIZE
from relmigrate.catalog import COPYABLE_KINDS, TableDescriptor
from relmigrate.ordering import (
    build_dependency_graph, cyclic_rows, cyclic_tables, self_reference_columns,
    sort_rows, sort_tables,
)
from relmigrate.stores import DestinationUnreachable, StoreConnectionError, StoreError
from relmigrate.transfer import (
    CANCELLED, EMPTY, FAILED, MIGRATED, PAGINATED, PRE_ORDERED, SKIPPED,
    MigrationCancelled, ProgressCallback, TableReport,
    transfer_paginated, transfer_rows,
)


# ═════════════════════════════════════════════════════════════
# Reports and plans
# ═════════════════════════════════════════════════════════════

@dataclass
class RunReport:
    order: list[str] = field(default_factory=list)
    table_cycle: list[str] = field(default_factory=list)
    tables: list[TableReport] = field(default_factory=list)
    fatal_error: Optional[str] = None
    cancelled: bool = False

    @property
    def failed_tables(self) -> list[str]:
        return [t.table for t in self.tables if t.status == FAILED]

    @property
    def skipped_tables(self) -> list[str]:
        return [t.table for t in self.tables if t.status == SKIPPED]

    @property
    def success(self) -> bool:
        return self.fatal_error is None and not self.cancelled and not self.failed_tables

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 130
        return 0 if self.success else 1

    @property
    def total_inserted(self) -> int:
        return sum(t.inserted for t in self.tables)

    def table(self, name: str) -> Optional[TableReport]:
        for t in self.tables:
            if t.table == name:
                return t
        return None


@dataclass
class TablePlan:
    """How one table will be moved. ``table`` is narrowed to the shared columns."""
    table: TableDescriptor
    action: str
    reason: str = ""
    parent_column: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


def plan_table(source, destination, table: TableDescriptor) -> TablePlan:
    """Decide the transfer strategy for one table, or why it must be skipped."""
    name = table.name
    if not source.has_table(name):
        return TablePlan(table, SKIPPED, reason="table missing on source")
    if not destination.has_table(name):
        return TablePlan(table, SKIPPED, reason="table missing on destination")
    if not table.primary_key:
        return TablePlan(table, SKIPPED, reason="no single-column primary key")

    source_cols = set(source.table_columns(name))
    dest_cols = set(destination.table_columns(name))
    if table.primary_key not in source_cols or table.primary_key not in dest_cols:
        return TablePlan(table, SKIPPED, reason=f"primary key {table.primary_key} missing on one side")

    warnings = []
    dropped = [c for c in table.columns if c not in source_cols or c not in dest_cols]
    if dropped:
        warnings.append(f"columns not present on both sides, left to defaults: {', '.join(dropped)}")
        table = replace(
            table,
            fields=tuple(f for f in table.fields if f.kind not in COPYABLE_KINDS or f.name not in dropped),
        )

    self_cols = [c for c in self_reference_columns(table) if c in table.columns]
    if len(self_cols) == 1:
        return TablePlan(table, PRE_ORDERED, parent_column=self_cols[0], warnings=warnings)
    if len(self_cols) > 1:
        warnings.append(
            f"multiple self-referencing columns ({', '.join(self_cols)}); "
            "rows are not ordered automatically and may need manual handling"
        )
    return TablePlan(table, PAGINATED, warnings=warnings)


def plan_migration(source, destination, tables: list[TableDescriptor]) -> tuple[list[str], list[str], list[TablePlan]]:
    """Insertion order, the cyclic remainder, and a plan per table, in order."""
    graph = build_dependency_graph(tables)
    order = sort_tables(tables, graph)
    by_name = {t.name: t for t in tables}
    plans = [plan_table(source, destination, by_name[name]) for name in order]
    return order, cyclic_tables(tables, graph), plans


# ═════════════════════════════════════════════════════════════
# Run
# ═════════════════════════════════════════════════════════════

def print_progress(table: str, done: int, total: int):
    console.print(f"  {table}: {done}/{total}")


def migrate_table(source, destination, plan: TablePlan, batch_size: int = DEFAULT_BATCH_SIZE,
                  cancel=None, on_progress: Optional[ProgressCallback] = None) -> TableReport:
    table = plan.table
    for warning in plan.warnings:
        console.print(f"  [yellow]⚠ {table.name}:[/yellow] {warning}")

    if plan.action == SKIPPED:
        console.print(f"  [yellow]⚠ Skipping {table.name}:[/yellow] {plan.reason}")
        return TableReport(table=table.name, status=SKIPPED, message=plan.reason, warnings=list(plan.warnings))

    if plan.action == PRE_ORDERED:
        # Self-referencing tables are loaded whole to order parents first
        rows = source.find_all(table)
        ordered, has_cycle = sort_rows(rows, plan.parent_column, table.primary_key)
        cycle_note = None
        if has_cycle:
            stuck = [r[table.primary_key] for r in cyclic_rows(rows, plan.parent_column, table.primary_key)]
            preview = ", ".join(repr(k) for k in stuck[:10]) + (" ..." if len(stuck) > 10 else "")
            cycle_note = (
                f"cycle in {plan.parent_column}; {len(stuck)} row(s) appended unordered "
                f"and may fail: {preview}"
            )
            console.print(f"  [yellow]⚠ {table.name}:[/yellow] {cycle_note}")
        report = transfer_rows(destination, table, ordered, batch_size, cancel, on_progress)
        if cycle_note:
            report.cycle_warnings = 1
            report.warnings.append(cycle_note)
    else:
        report = transfer_paginated(source, destination, table, batch_size, cancel, on_progress)

    report.warnings[:0] = plan.warnings
    return report


def _failed_table(name: str, error: StoreError) -> TableReport:
    """The partial report carried by the error, so rows already written stay counted."""
    table_report = error.report or TableReport(table=name)
    table_report.status = FAILED
    table_report.message = str(error)
    return table_report


def run_migration(source, destination, tables: list[TableDescriptor],
                  batch_size: int = DEFAULT_BATCH_SIZE, cancel=None,
                  on_progress: Optional[ProgressCallback] = print_progress) -> RunReport:
    """Copy every table from ``source`` into ``destination`` in dependency order.

    Raises DestinationUnreachable before any row moves if the destination
    does not answer. Per-table failures are recorded and the run goes on;
    a lost connection stops the remaining tables.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")
    if not destination.ping():
        raise DestinationUnreachable(f"Destination unreachable: {destination.describe()}")

    report = RunReport()
    graph = build_dependency_graph(tables)
    report.order = sort_tables(tables, graph)
    report.table_cycle = cyclic_tables(tables, graph)
    if report.table_cycle:
        console.print(
            f"  [yellow]⚠ Dependency cycle between {', '.join(report.table_cycle)};[/yellow] "
            "these tables are migrated in catalog order and inserts may violate foreign keys."
        )

    by_name = {t.name: t for t in tables}
    for name in report.order:
        if cancel is not None and cancel.is_set():
            report.cancelled = True
            break
        try:
            plan = plan_table(source, destination, by_name[name])
            table_report = migrate_table(source, destination, plan, batch_size, cancel, on_progress)
        except MigrationCancelled as e:
            report.cancelled = True
            report.tables.append(e.report or TableReport(table=name, status=CANCELLED))
            break
        except StoreConnectionError as e:
            console.print(f"  [red]✗ {name}:[/red] {e}")
            report.fatal_error = str(e)
            report.tables.append(_failed_table(name, e))
            break
        except StoreError as e:
            console.print(f"  [red]✗ {name}:[/red] {e}")
            report.tables.append(_failed_table(name, e))
            continue

        report.tables.append(table_report)
        if table_report.status == FAILED:
            console.print(f"  [red]✗ {name}:[/red] {table_report.message}")
        elif table_report.status == EMPTY:
            console.print(f"  [green]✓[/green] {name}: 0 rows (skip)")
        elif table_report.status == MIGRATED:
            console.print(
                f"  [green]✓[/green] {name}: {table_report.inserted} inserted, "
                f"{table_report.skipped_existing} already present"
            )
            try:
                destination.reset_sequences(plan.table)
            except StoreError as e:
                table_report.warnings.append(f"sequence reset failed: {e}")
                console.print(f"  [yellow]⚠ {name}: sequence reset failed:[/yellow] {e}")
    else:
        return report

    done = {t.table for t in report.tables}
    for name in report.order:
        if name not in done:
            report.tables.append(TableReport(
                table=name, status=SKIPPED, message="not attempted, run stopped early",
            ))
    return report
