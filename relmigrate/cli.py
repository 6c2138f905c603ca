"""
CLI: argument parsing, dry-run mode, and main migration pipeline.
"""

import sys
import signal
import argparse
import threading
from pathlib import Path

from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.progress import (
    Progress, SpinnerColumn, TextColumn,
    BarColumn, TaskProgressColumn, TimeElapsedColumn,
)
from rich import box

from relmigrate import console, CONFIG_FILE
from relmigrate.catalog import load_catalog_file, read_catalog
from relmigrate.config import init_config, load_config, check_connection
from relmigrate.orchestrator import plan_migration, run_migration
from relmigrate.ordering import build_dependency_graph, sort_tables
from relmigrate.reporting import generate_html_report, print_run_summary
from relmigrate.stores import DestinationUnreachable, StoreError, open_store
from relmigrate.transfer import PRE_ORDERED, SKIPPED
from relmigrate.validation import validate_migration

TITLE = "Relational Data Migration Tool"


def parse_args(argv=None):
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Copy every row from one relational database into another, in foreign-key order",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python migrate.py --init                 Create config file template\n"
            "  python migrate.py --dry-run              Validate and show the plan, no migration\n"
            "  python migrate.py                        Run full migration\n"
            "  python migrate.py --source old.db --yes  Migrate a different SQLite file, no prompt\n"
        ),
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Create migration_config.json template and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate config, test connections, preview the migration plan — no data is written",
    )
    parser.add_argument("--config", type=Path, default=CONFIG_FILE, help="Path to the config file")
    parser.add_argument("--source", help="Source database location (SQLite file path)")
    parser.add_argument("--batch-size", type=int, help="Rows per batch (default 500)")
    parser.add_argument("--catalog", type=Path, help="JSON catalog file to use instead of reading the destination schema")
    parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    parser.add_argument("--skip-validation", action="store_true", help="Skip the row count comparison after migrating")
    parser.add_argument("--html-report", action="store_true", help="Write migration_report.html")
    parser.add_argument("--verbose", action="store_true", help="Show full detailed tables in console")
    return parser.parse_args(argv)


def load_tables(destination, cfg, catalog_path=None):
    """Catalog from a file if given, otherwise from the destination's schema."""
    if catalog_path:
        return load_catalog_file(catalog_path, exclude=cfg.exclude_tables)
    return read_catalog(destination, exclude=cfg.exclude_tables)


def _connection_panel(cfg, title=None):
    return Panel(
        f"[bold]Source:[/bold]       {cfg.source.display}\n"
        f"[bold]Destination:[/bold]  {cfg.destination.display}\n"
        f"[bold]Batch size:[/bold]   {cfg.batch_size}",
        title=title,
        border_style="yellow" if title else "dim",
    )


def dry_run(cfg, catalog_path=None):
    """Validate config and preview what would be migrated, without actually migrating."""
    console.print(
        Panel(
            f"[bold white]{TITLE}[/bold white]\n"
            "[dim]🔍 DRY RUN — No data will be migrated[/dim]",
            border_style="bright_magenta",
            padding=(1, 4),
        )
    )

    all_ok = True

    # ── 1. Config ─────────────────────────────────────────────
    console.print("[bold yellow][1/4][/bold yellow] Configuration")
    console.print(_connection_panel(cfg))
    console.print("  [green]✓[/green] Config is valid\n")

    # ── 2. Source connection ──────────────────────────────────
    console.print("[bold yellow][2/4][/bold yellow] Source connection")
    source_ok = check_connection(cfg.source, "Source")
    if source_ok:
        console.print("  [green]✓[/green] Source is reachable\n")
    else:
        all_ok = False

    # ── 3. Destination connection ─────────────────────────────
    console.print("[bold yellow][3/4][/bold yellow] Destination connection")
    destination_ok = check_connection(cfg.destination, "Destination")
    if destination_ok:
        console.print("  [green]✓[/green] Destination is reachable\n")
    else:
        all_ok = False

    # ── 4. Plan preview ───────────────────────────────────────
    console.print("[bold yellow][4/4][/bold yellow] Migration plan")
    if source_ok and destination_ok:
        try:
            with open_store(cfg.source) as source, open_store(cfg.destination) as destination:
                tables = load_tables(destination, cfg, catalog_path)
                order, cyclic, plans = plan_migration(source, destination, tables)

                if not tables:
                    console.print("  [yellow]⚠ No tables found in the catalog.[/yellow]\n")
                else:
                    preview = Table(box=box.ROUNDED, show_lines=False, pad_edge=True)
                    preview.add_column("#", justify="right", style="dim")
                    preview.add_column("Table", style="cyan", min_width=20)
                    preview.add_column("Rows", justify="right", style="yellow")
                    preview.add_column("Strategy", style="green")
                    preview.add_column("Notes", style="dim")

                    total_rows = 0
                    for i, plan in enumerate(plans, 1):
                        rows = "-"
                        if plan.action != SKIPPED:
                            count = source.count(plan.table)
                            total_rows += count
                            rows = f"{count:,}"
                        strategy = plan.action
                        if plan.action == PRE_ORDERED:
                            strategy += f" ({plan.parent_column})"
                        notes = [plan.reason] if plan.reason else []
                        notes.extend(plan.warnings)
                        if plan.table.name in cyclic:
                            notes.append("dependency cycle")
                        preview.add_row(str(i), plan.table.name, rows, strategy, "; ".join(notes))

                    console.print(preview)
                    console.print(
                        f"\n  [green]✓[/green] {len(order)} tables with "
                        f"{total_rows:,} total rows ready to migrate\n"
                    )
                    if cyclic:
                        console.print(f"  [yellow]⚠ Dependency cycle:[/yellow] {', '.join(cyclic)}\n")
        except (StoreError, RuntimeError) as e:
            console.print(f"  [red]✗ Could not build the plan:[/red] {e}")
            all_ok = False
    else:
        console.print("  [dim]Skipped — a connection failed.[/dim]\n")

    # ── Summary ───────────────────────────────────────────────
    if all_ok:
        console.print(
            Panel(
                "[bold green]✓ Dry run passed — everything looks good![/bold green]\n\n"
                "[bold]Ready to migrate. Run:[/bold]\n"
                "  [cyan]python migrate.py[/cyan]",
                border_style="green",
                padding=(1, 2),
            )
        )
    else:
        console.print(
            Panel(
                "[bold red]✗ Dry run found issues.[/bold red]\n"
                "[yellow]Fix the errors above before running the actual migration.[/yellow]",
                border_style="red",
                padding=(1, 2),
            )
        )

    return 0 if all_ok else 1


class ProgressTracker:
    """Rich progress bar per table, fed by the transfer engine after every chunk."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self.tasks = {}

    def __call__(self, table: str, done: int, total: int):
        if table not in self.tasks:
            self.tasks[table] = self.progress.add_task(f"[cyan]{table}", total=total)
        self.progress.update(self.tasks[table], completed=done)


def install_cancel_handler(cancel: threading.Event):
    """First Ctrl+C asks the run to stop after the current batch; the second one aborts."""
    previous = signal.getsignal(signal.SIGINT)

    def handler(signum, frame):
        if cancel.is_set():
            signal.signal(signal.SIGINT, previous)
            raise KeyboardInterrupt
        cancel.set()
        console.print("\n[yellow]⚠ Stopping after the current batch… press Ctrl+C again to abort.[/yellow]")

    signal.signal(signal.SIGINT, handler)
    return previous


def main(argv=None):
    args = parse_args(argv)

    # ── Handle --init flag ────────────────────────────────────
    if args.init:
        console.print(
            Panel(
                f"[bold white]{TITLE}[/bold white]\n"
                "[dim]Configuration Setup[/dim]",
                border_style="bright_cyan",
                padding=(1, 4),
            )
        )
        init_config(args.config)
        return 0

    # ── Load config (needed for both dry-run and full migration) ──
    cfg = load_config(args.config, source_path=args.source, batch_size=args.batch_size)

    # ── Handle --dry-run flag ─────────────────────────────────
    if args.dry_run:
        return dry_run(cfg, args.catalog)

    # ── Banner ────────────────────────────────────────────────
    console.print(
        Panel(
            f"[bold white]{TITLE}[/bold white]\n"
            f"[dim]{cfg.source.engine} → {cfg.destination.engine} • dependency-ordered, idempotent[/dim]",
            border_style="bright_cyan",
            padding=(1, 4),
        )
    )
    console.print(f"  [green]✓[/green] Config loaded from [cyan]{args.config.name}[/cyan]\n")

    # ── Test connections ──────────────────────────────────────
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("[cyan]Testing connections...", total=2)
        source_ok = check_connection(cfg.source, "Source")
        progress.update(task, advance=1)
        destination_ok = source_ok and check_connection(cfg.destination, "Destination")
        progress.update(task, advance=1)

    if not source_ok:
        console.print("\n[red]Cannot open the source database. Please check the configuration and try again.[/red]\n")
        return 1
    if not destination_ok:
        console.print("\n[red]✗ Destination unreachable. No data was migrated.[/red]\n")
        return 1

    console.print("  [green]✓[/green] Source and destination reachable\n")

    # ── Confirmation ──────────────────────────────────────────
    console.print(_connection_panel(cfg, title="Migration Summary"))
    if not args.yes and not Confirm.ask("\n  Proceed with migration?", default=True):
        console.print("[dim]Migration cancelled.[/dim]")
        return 0

    console.print("")
    cancel = threading.Event()
    previous_handler = install_cancel_handler(cancel)
    validation = None

    try:
        with open_store(cfg.source) as source, open_store(cfg.destination) as destination:
            # ── Step 1: Catalog and order ─────────────────────
            console.print("[bold yellow][1/4][/bold yellow] Reading schema catalog...")
            try:
                tables = load_tables(destination, cfg, args.catalog)
            except RuntimeError as e:
                console.print(f"\n[red]✗ Cannot read the schema catalog:[/red] {e}\n")
                return 1
            console.print(f"  [green]✓[/green] {len(tables)} tables cataloged")
            order = sort_tables(tables, build_dependency_graph(tables))
            console.print(f"  [dim]Import order: {' → '.join(order)}[/dim]\n")

            # ── Step 2: Migrate ───────────────────────────────
            console.print("[bold yellow][2/4][/bold yellow] Migrating data...")
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TextColumn("{task.completed:,.0f}/{task.total:,.0f}"),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                report = run_migration(
                    source, destination, tables,
                    batch_size=cfg.batch_size,
                    cancel=cancel,
                    on_progress=ProgressTracker(progress),
                )

            # ── Step 3: Validate ──────────────────────────────
            console.print("[bold yellow][3/4][/bold yellow] Validating row counts...")
            if args.skip_validation or report.fatal_error or report.cancelled:
                console.print("  [dim]Skipped.[/dim]\n")
            else:
                try:
                    validation = validate_migration(source, destination, tables, verbose=args.verbose)
                except StoreError as e:
                    console.print(f"\n  [red]✗ Validation error: {e}[/red]")
                console.print("")
    except DestinationUnreachable as e:
        console.print(f"\n[red]✗ {e}. No data was migrated.[/red]\n")
        return 1
    except StoreError as e:
        console.print(f"\n[red]✗ {e}[/red]\n")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    # ── Step 4: Summary ───────────────────────────────────────
    console.print("[bold yellow][4/4][/bold yellow] Migration summary")
    print_run_summary(report)

    if args.html_report:
        try:
            html_path = generate_html_report(report, validation, cfg.source.display, cfg.destination.display)
            console.print(f"  [green]✓[/green] Detailed report generated: [cyan]{html_path}[/cyan]")
        except OSError as e:
            console.print(f"  [red]✗ HTML report error: {e}[/red]")

    console.print("")
    if report.success:
        console.print(
            Panel(
                "[bold green]✓ Migration completed successfully![/bold green]\n"
                f"[green]{report.total_inserted:,} rows inserted across {len(report.tables)} tables.[/green]\n\n"
                "Re-running is safe: rows already present are skipped.",
                border_style="green",
                padding=(1, 2),
            )
        )
    elif report.cancelled:
        console.print(
            Panel(
                "[bold yellow]⚠ Migration cancelled[/bold yellow]\n"
                "Completed batches stay in the destination. Run again to continue where it stopped.",
                border_style="yellow",
                padding=(1, 2),
            )
        )
    else:
        console.print(
            Panel(
                "[bold red]✗ Migration finished with issues[/bold red]\n"
                "Some tables failed or were not attempted. Check the summary above.\n"
                "Fix the cause and run again: rows already present are skipped.",
                border_style="red",
                padding=(1, 2),
            )
        )

    return report.exit_code


def entrypoint():
    try:
        exit_code = main()
        sys.exit(exit_code)
    except KeyboardInterrupt:
        console.print("\n[dim]Migration cancelled by user.[/dim]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Unexpected error: {e}[/red]")
        console.print("[dim]Please report this issue with the full traceback.[/dim]")
        import traceback
        traceback.print_exc()
        sys.exit(1)
