"""
Validation: compare per-table row counts between source and destination.
"""

from rich.table import Table
from rich import box

from relmigrate import console
from relmigrate.catalog import TableDescriptor
from relmigrate.stores import StoreError

OK = "✓ OK"
MISSING = "✗ MISSING"
MISMATCH = "✗ MISMATCH"
EXTRA = "? EXTRA"


def _safe_count(store, table: TableDescriptor):
    if not store.has_table(table.name):
        return None
    try:
        return store.count(table)
    except StoreError as e:
        console.print(f"  [yellow]⚠ Could not count rows in {store.engine} table {table.name}:[/yellow] {e}")
        return -1


def validate_migration(source, destination, tables: list[TableDescriptor], verbose: bool = False) -> dict:
    """Row counts per table on both sides.

    A destination holding more rows than the source is flagged EXTRA but
    still passes: rows written there by other means are left alone.
    """
    all_passed = True
    report = {
        "row_counts": {"tables": [], "passed": 0, "failed": 0, "total": 0},
        "all_passed": True,
        "validation_errors": [],
    }

    table = Table(box=box.ROUNDED, show_lines=False, pad_edge=True)
    table.add_column("Table", style="cyan", min_width=20)
    table.add_column("Source", justify="right", style="yellow")
    table.add_column("Destination", justify="right", style="green")
    table.add_column("Status", justify="center")

    for t in tables:
        src_count = _safe_count(source, t)
        dst_count = _safe_count(destination, t)

        passed = True
        if src_count is None or dst_count is None:
            status = MISSING
            passed = False
        elif src_count < 0 or dst_count < 0:
            status = MISMATCH
            passed = False
            report["validation_errors"].append(f"{t.name}: could not count rows on both sides")
        elif src_count == dst_count:
            status = OK
        elif dst_count > src_count:
            status = EXTRA
        else:
            status = MISMATCH
            passed = False

        if passed:
            report["row_counts"]["passed"] += 1
        else:
            report["row_counts"]["failed"] += 1
            all_passed = False

        shown_src = "-" if src_count is None else src_count
        shown_dst = "-" if dst_count is None else dst_count
        report["row_counts"]["tables"].append({
            "table": t.name,
            "source": shown_src,
            "destination": shown_dst,
            "status": status,
            "passed": passed,
        })

        rich_status = f"[green]{status}[/green]" if status == OK else f"[red]{status}[/red]"
        if status == EXTRA:
            rich_status = f"[yellow]{status}[/yellow]"
        table.add_row(t.name, str(shown_src), str(shown_dst), rich_status)

    report["row_counts"]["total"] = len(tables)
    report["all_passed"] = all_passed

    if verbose:
        console.print(table)
    else:
        color = "green" if all_passed else "red"
        console.print(
            f"  [{color}]Row counts:[/] {report['row_counts']['passed']}/{report['row_counts']['total']} tables match"
        )

    if report["validation_errors"]:
        console.print("\n  [bold red]Validation Issues:[/bold red]")
        for err in report["validation_errors"]:
            console.print(f"    [red]✗[/red] {err}")

    return report
