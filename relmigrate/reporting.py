"""
Run summary (console table) and HTML migration report generation.
"""

from html import escape
from typing import Optional

from rich.table import Table
from rich import box

from relmigrate import console, HTML_REPORT_FILE
from relmigrate.transfer import CANCELLED, EMPTY, FAILED, MIGRATED, SKIPPED

STATUS_STYLES = {
    MIGRATED: "green",
    EMPTY: "dim",
    SKIPPED: "yellow",
    FAILED: "red",
    CANCELLED: "red",
}


def print_run_summary(report):
    """Per-table counts with skip and cycle flags."""
    table = Table(box=box.ROUNDED, show_lines=False, pad_edge=True)
    table.add_column("Table", style="cyan", min_width=20)
    table.add_column("Mode", style="dim")
    table.add_column("Source", justify="right", style="yellow")
    table.add_column("Inserted", justify="right", style="green")
    table.add_column("Existing", justify="right")
    table.add_column("Cycle", justify="center")
    table.add_column("Status", justify="center")

    for t in report.tables:
        style = STATUS_STYLES.get(t.status, "white")
        table.add_row(
            t.table,
            t.mode or "-",
            f"{t.total_source:,}",
            f"{t.inserted:,}",
            f"{t.skipped_existing:,}",
            "[yellow]⚠[/yellow]" if t.cycle_warnings or t.table in report.table_cycle else "",
            f"[{style}]{t.status}[/{style}]",
        )

    table.add_section()
    table.add_row(
        f"[bold]{len(report.tables)} tables[/bold]",
        "",
        f"[bold]{sum(t.total_source for t in report.tables):,}[/bold]",
        f"[bold]{report.total_inserted:,}[/bold]",
        f"[bold]{sum(t.skipped_existing for t in report.tables):,}[/bold]",
        "",
        "",
    )
    console.print(table)

    for t in report.tables:
        if t.status in (SKIPPED, FAILED, CANCELLED) and t.message:
            style = STATUS_STYLES[t.status]
            console.print(f"  [{style}]{t.status.upper()}[/{style}] {t.table}: {t.message}")
    if report.fatal_error:
        console.print(f"  [red]✗ Fatal:[/red] {report.fatal_error}")


def generate_html_report(report, validation: Optional[dict], source_name: str, destination_name: str,
                         html_file: str = HTML_REPORT_FILE) -> str:
    """Generate a detailed HTML migration report."""

    # CSS for a modern look
    css = """
    body { font-family: 'Inter', -apple-system, sans-serif; line-height: 1.5; color: #333; max-width: 1200px; margin: 0 auto; padding: 40px 20px; background-color: #f8f9fa; }
    h1, h2, h3 { color: #1a202c; }
    .header { border-bottom: 2px solid #e2e8f0; padding-bottom: 20px; margin-bottom: 40px; display: flex; justify-content: space-between; align-items: center; }
    .status { padding: 8px 16px; border-radius: 9999px; font-weight: 600; font-size: 0.875rem; }
    .status-pass { background-color: #c6f6d5; color: #22543d; }
    .status-fail { background-color: #fed7d7; color: #822727; }
    .card { background: white; border-radius: 8px; box-shadow: 0 1px 3px rgba(0,0,0,0.1); padding: 24px; margin-bottom: 32px; }
    table { width: 100%; border-collapse: collapse; margin-top: 16px; }
    th { text-align: left; padding: 12px; background: #f7fafc; border-bottom: 2px solid #edf2f7; font-size: 0.75rem; text-transform: uppercase; letter-spacing: 0.05em; color: #4a5568; }
    td { padding: 12px; border-bottom: 1px solid #edf2f7; font-size: 0.875rem; }
    .table-name { font-weight: 600; color: #2d3748; }
    .src-val { color: #b7791f; }
    .dst-val { color: #2f855a; }
    .badge { padding: 2px 8px; border-radius: 4px; font-size: 0.75rem; font-weight: 600; }
    .badge-ok { background: #c6f6d5; color: #22543d; }
    .badge-err { background: #fed7d7; color: #822727; }
    .badge-warn { background: #feebc8; color: #744210; }
    .note { color: #718096; font-style: italic; }
    """

    passed = report.success and (validation is None or validation["all_passed"])
    status_class = "status-pass" if passed else "status-fail"
    status_text = "PASSED" if passed else "ISSUES DETECTED"
    badge_for = {MIGRATED: "badge-ok", EMPTY: "badge-ok", SKIPPED: "badge-warn"}

    errors = []
    if report.fatal_error:
        errors.append(report.fatal_error)
    if validation:
        errors.extend(validation["validation_errors"])

    error_block = ""
    if errors:
        items = "".join(f"<li>{escape(e)}</li>" for e in errors)
        error_block = f'<div class="card" style="border-left: 4px solid #f56565;"><h3>Errors</h3><ul style="color: #c53030;">{items}</ul></div>'
    order_line = " &rarr; ".join(escape(name) for name in report.order)
    cycle_note = ""
    if report.table_cycle:
        cycle_note = f'<p class="note">Dependency cycle, migrated in catalog order: {escape(", ".join(report.table_cycle))}</p>'

    html = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Migration Report - {escape(source_name)} to {escape(destination_name)}</title>
    <style>{css}</style>
</head>
<body>
    <div class="header">
        <div>
            <h1>Migration Report</h1>
            <p style="color: #718096; margin-top: 4px;">{escape(source_name)} &rarr; {escape(destination_name)}</p>
        </div>
        <div class="status {status_class}">{status_text}</div>
    </div>

    <!-- Summary Stats -->
    <div style="display: grid; grid-template-columns: repeat(auto-fit, minmax(200px, 1fr)); gap: 20px; margin-bottom: 40px;">
        <div class="card" style="margin-bottom: 0; text-align: center;">
            <div style="color: #718096; font-size: 0.875rem;">Tables</div>
            <div style="font-size: 2rem; font-weight: 700; color: #2d3748;">{len(report.tables)}</div>
        </div>
        <div class="card" style="margin-bottom: 0; text-align: center;">
            <div style="color: #718096; font-size: 0.875rem;">Rows Inserted</div>
            <div style="font-size: 2rem; font-weight: 700; color: #2d3748;">{report.total_inserted:,}</div>
        </div>
        <div class="card" style="margin-bottom: 0; text-align: center;">
            <div style="color: #718096; font-size: 0.875rem;">Failed / Skipped</div>
            <div style="font-size: 2rem; font-weight: 700; color: #2d3748;">{len(report.failed_tables)} / {len(report.skipped_tables)}</div>
        </div>
    </div>

    {error_block}

    <div class="card">
        <h3>Insertion Order</h3>
        <p>{order_line}</p>
        {cycle_note}
    </div>

    <div class="card">
        <h3>Tables</h3>
        <table>
            <thead>
                <tr>
                    <th>Table Name</th>
                    <th>Mode</th>
                    <th>Source Rows</th>
                    <th>Inserted</th>
                    <th>Already Present</th>
                    <th>Status</th>
                    <th>Notes</th>
                </tr>
            </thead>
            <tbody>
    """

    for t in report.tables:
        notes = [t.message] if t.message else []
        notes.extend(t.warnings)
        html += f"""
                <tr>
                    <td class="table-name">{escape(t.table)}</td>
                    <td>{escape(t.mode or "-")}</td>
                    <td class="src-val">{t.total_source:,}</td>
                    <td class="dst-val">{t.inserted:,}</td>
                    <td>{t.skipped_existing:,}</td>
                    <td><span class="badge {badge_for.get(t.status, 'badge-err')}">{escape(t.status)}</span></td>
                    <td class="note">{"<br>".join(escape(n) for n in notes)}</td>
                </tr>"""

    html += """
            </tbody>
        </table>
    </div>
    """

    if validation:
        html += """
    <div class="card">
        <h3>Row Count Comparison</h3>
        <table>
            <thead>
                <tr>
                    <th>Table Name</th>
                    <th>Source Count</th>
                    <th>Destination Count</th>
                    <th>Status</th>
                </tr>
            </thead>
            <tbody>
        """
        for row in validation["row_counts"]["tables"]:
            b_class = "badge-ok" if "OK" in row["status"] else "badge-err"
            if "EXTRA" in row["status"]:
                b_class = "badge-warn"
            html += f"""
                <tr>
                    <td class="table-name">{escape(row['table'])}</td>
                    <td class="src-val">{row['source']}</td>
                    <td class="dst-val">{row['destination']}</td>
                    <td><span class="badge {b_class}">{row['status']}</span></td>
                </tr>"""
        html += """
            </tbody>
        </table>
    </div>
        """

    html += """
    <footer style="text-align: center; color: #a0aec0; font-size: 0.75rem; margin-top: 40px;">
        Generated by relmigrate
    </footer>
</body>
</html>
    """

    with open(html_file, "w", encoding="utf-8") as f:
        f.write(html)

    return html_file
