# ============================================================================
# STREET PATROL LOG - Report Export
# ============================================================================
# Render an aggregation result as CSV, a self-contained HTML document, or an
# XLSX workbook. Totals and the patrol list always come straight from the
# AggregationResult; nothing is re-filtered or re-summed here.
# ============================================================================

import csv
import io
import logging
import re
from datetime import datetime
from html import escape as _h
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

from app.config import get_config

from .aggregator import AggregationResult, format_long_date
from .models import (
    AGE_BANDS,
    AGE_BAND_LABELS,
    ETHNICITIES,
    ETHNICITY_LABELS,
    GENDERS,
    GENDER_LABELS,
    STATISTIC_KEYS,
    STATISTIC_LABELS,
    Patrol,
    contact_key,
)

logger = logging.getLogger("patrols.export")

NO_DATA_TEXT = "No data for this period"
NOTES_PREVIEW_LENGTH = 300

MEDIA_TYPES = {
    "csv": "text/csv; charset=utf-8",
    "html": "text/html; charset=utf-8",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def export_filename(title: str, ext: str) -> str:
    """'January 2024 Report' -> 'January_2024_Report.csv'"""
    stem = re.sub(r"\s+", "_", title.strip())
    return f"{stem}.{ext}"


def notes_preview(notes: Optional[str], limit: int = NOTES_PREVIEW_LENGTH) -> str:
    """Truncate notes for the history list. Exports always carry full notes."""
    if not notes:
        return ""
    if len(notes) > limit:
        return notes[:limit] + "..."
    return notes


def _short_date(patrol: Patrol) -> str:
    return patrol.start_time.strftime("%Y-%m-%d") if patrol.start_time else ""


def _long_date(patrol: Patrol) -> str:
    if not patrol.start_time:
        return ""
    return format_long_date(patrol.start_time)


# ============================================================================
# CSV
# ============================================================================

def to_csv(result: AggregationResult, title: str, date_range_label: str) -> str:
    """Render the report as CSV text. Every field is quoted."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")

    writer.writerow([title])
    writer.writerow([date_range_label])
    writer.writerow([])
    writer.writerow(["Total Patrols", result.patrol_count])
    writer.writerow([])

    # Summary section
    writer.writerow(["STATISTICS SUMMARY"])
    for key in STATISTIC_KEYS:
        writer.writerow([STATISTIC_LABELS[key], result.statistics.get(key, 0)])
    writer.writerow([])

    # Contact matrix
    writer.writerow(["CONTACT MATRIX"])
    if result.has_data:
        header = [""]
        for eth in ETHNICITIES:
            header.extend([ETHNICITY_LABELS[eth], ""])
        writer.writerow(header)

        genders = [""]
        for _ in ETHNICITIES:
            genders.extend(GENDER_LABELS[g] for g in GENDERS)
        writer.writerow(genders)

        for age in AGE_BANDS:
            row = [AGE_BAND_LABELS[age]]
            for eth in ETHNICITIES:
                for gender in GENDERS:
                    row.append(result.contact_statistics.get(contact_key(eth, gender, age), 0))
            writer.writerow(row)
    else:
        writer.writerow([NO_DATA_TEXT])
    writer.writerow([])

    # Patrol details
    writer.writerow(["PATROL DETAILS"])
    if result.has_data:
        writer.writerow(["Date", "Location", "Team Leader", "Status", "Notes"])
        for patrol in result.patrols:
            writer.writerow([
                _short_date(patrol),
                patrol.location,
                patrol.team_leader,
                patrol.status.label,
                patrol.notes or "",
            ])
    else:
        writer.writerow([NO_DATA_TEXT])

    return buf.getvalue()


# ============================================================================
# HTML (inline, self-contained for print / email)
# ============================================================================
_BASE_CSS = """
* { box-sizing: border-box; }
body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 1200px; margin: 0 auto; padding: 20px; }
h1, h2, h3 { color: #1e3a8a; margin-top: 1.5em; }
h1 { font-size: 28px; border-bottom: 2px solid #1e3a8a; padding-bottom: 10px; }
h2 { font-size: 22px; border-bottom: 1px solid #ddd; padding-bottom: 5px; }
.date-range { color: #666; font-style: italic; margin-bottom: 20px; }
table { width: 100%; border-collapse: collapse; margin: 20px 0; }
th, td { border: 1px solid #ddd; padding: 8px 12px; text-align: center; }
th { background-color: #f0f4ff; font-weight: bold; }
td.age { text-align: left; font-weight: 600; }
.stats-grid { display: grid; grid-template-columns: repeat(auto-fill, minmax(200px, 1fr)); gap: 15px; margin: 20px 0; }
.stat-card { background-color: #f9fafb; border-radius: 8px; padding: 15px; box-shadow: 0 1px 3px rgba(0,0,0,0.1); }
.stat-label { font-size: 14px; color: #666; margin-bottom: 5px; }
.stat-value { font-size: 24px; font-weight: bold; color: #1e3a8a; }
.patrol-card { border: 1px solid #ddd; border-radius: 8px; padding: 15px; margin-bottom: 15px; break-inside: avoid; }
.patrol-header { display: flex; justify-content: space-between; margin-bottom: 10px; }
.patrol-location { font-weight: bold; color: #1e3a8a; }
.patrol-meta { font-size: 14px; color: #666; }
.patrol-status { background-color: #e0f2fe; color: #0369a1; font-size: 12px; padding: 3px 8px; border-radius: 12px; font-weight: 500; height: fit-content; }
.patrol-notes { font-size: 14px; white-space: pre-wrap; margin-top: 10px; }
.no-data { text-align: center; font-style: italic; color: #666; padding: 12px 0; }
.footer { border-top: 1px solid #ddd; padding-top: 8px; margin-top: 20px; font-size: 11px; color: #999; text-align: center; }
@media print { body { padding: 0; font-size: 12px; } h1 { font-size: 22px; } h2 { font-size: 18px; } .stat-value { font-size: 18px; } }
"""


def _stat_card(label: str, value: int, key: str) -> str:
    return (
        '<div class="stat-card">'
        f'<div class="stat-label">{_h(label)}</div>'
        f'<div class="stat-value" data-stat="{key}">{value}</div>'
        "</div>\n"
    )


def _contact_table(result: AggregationResult) -> str:
    html = "<table>\n<thead>\n<tr><th></th>"
    for eth in ETHNICITIES:
        html += f'<th colspan="2">{_h(ETHNICITY_LABELS[eth])}</th>'
    html += "</tr>\n<tr><th></th>"
    for _ in ETHNICITIES:
        for gender in GENDERS:
            html += f"<th>{_h(GENDER_LABELS[gender])}</th>"
    html += "</tr>\n</thead>\n<tbody>\n"

    for age in AGE_BANDS:
        html += f'<tr><td class="age">{_h(AGE_BAND_LABELS[age])}</td>'
        for eth in ETHNICITIES:
            for gender in GENDERS:
                key = contact_key(eth, gender, age)
                html += f'<td data-cell="{key}">{result.contact_statistics.get(key, 0)}</td>'
        html += "</tr>\n"
    html += "</tbody>\n</table>\n"
    return html


def _patrol_card(patrol: Patrol) -> str:
    notes = ""
    if patrol.notes:
        notes = f'<div class="patrol-notes">{_h(patrol.notes)}</div>'
    return f"""<div class="patrol-card">
    <div class="patrol-header">
        <div>
            <div class="patrol-location">{_h(patrol.location)}</div>
            <div class="patrol-meta">{_h(_long_date(patrol))} &bull; Team Leader: {_h(patrol.team_leader)}</div>
        </div>
        <div class="patrol-status">{patrol.status.label}</div>
    </div>
    {notes}
</div>
"""


def to_html(
    result: AggregationResult,
    title: str,
    date_range_label: str,
    generated_at: Optional[datetime] = None,
) -> str:
    """Render a self-contained, printable HTML report."""
    generated = (generated_at or datetime.now()).strftime("%Y-%m-%d %H:%M")

    html = f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{_h(title)}</title>
<style>{_BASE_CSS}</style>
</head>
<body>
<h1>{_h(title)}</h1>
<div class="date-range">{_h(date_range_label)}</div>

<h2>Statistics Summary</h2>
<div class="stats-grid">
"""
    html += _stat_card("Total Patrols", result.patrol_count, "total_patrols")
    for key in STATISTIC_KEYS:
        html += _stat_card(STATISTIC_LABELS[key], result.statistics.get(key, 0), key)
    html += "</div>\n"

    html += "\n<h2>Contact Matrix</h2>\n"
    if result.has_data:
        html += _contact_table(result)
    else:
        html += f'<div class="no-data">{NO_DATA_TEXT}</div>\n'

    html += "\n<h2>Patrol Notes</h2>\n"
    if result.has_data:
        for patrol in result.patrols:
            html += _patrol_card(patrol)
    else:
        html += f'<div class="no-data">{NO_DATA_TEXT}</div>\n'

    html += f"""
<div class="footer">Street Patrol Log &mdash; {_h(title)} &mdash; Generated {generated}</div>
</body>
</html>"""
    return html


# ============================================================================
# XLSX
# ============================================================================

def to_xlsx(result: AggregationResult, title: str, date_range_label: str) -> bytes:
    """Render the report as a multi-sheet Excel workbook."""
    import openpyxl
    from openpyxl.styles import Font, PatternFill

    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color="1E3A8A", end_color="1E3A8A", fill_type="solid")

    def style_header(ws, row: int):
        for cell in ws[row]:
            cell.font = header_font
            cell.fill = header_fill

    wb = openpyxl.Workbook()

    # --- Summary sheet ---
    ws = wb.active
    ws.title = "Summary"
    ws.append([title])
    ws["A1"].font = Font(bold=True, size=14)
    ws.append([date_range_label])
    ws.append([])
    ws.append(["Statistic", "Total"])
    style_header(ws, 4)
    ws.append(["Total Patrols", result.patrol_count])
    for key in STATISTIC_KEYS:
        ws.append([STATISTIC_LABELS[key], result.statistics.get(key, 0)])
    ws.column_dimensions["A"].width = 24
    ws.column_dimensions["B"].width = 12

    # --- Contact matrix sheet ---
    ws2 = wb.create_sheet("Contact Matrix")
    if result.has_data:
        header = [""]
        for eth in ETHNICITIES:
            header.extend([ETHNICITY_LABELS[eth], ""])
        ws2.append(header)
        genders = [""]
        for _ in ETHNICITIES:
            genders.extend(GENDER_LABELS[g] for g in GENDERS)
        ws2.append(genders)
        style_header(ws2, 1)
        style_header(ws2, 2)
        for i, _ in enumerate(ETHNICITIES):
            col = 2 + i * 2
            ws2.merge_cells(start_row=1, start_column=col, end_row=1, end_column=col + 1)
        for age in AGE_BANDS:
            row = [AGE_BAND_LABELS[age]]
            for eth in ETHNICITIES:
                for gender in GENDERS:
                    row.append(result.contact_statistics.get(contact_key(eth, gender, age), 0))
            ws2.append(row)
    else:
        ws2.append([NO_DATA_TEXT])

    # --- Patrols sheet ---
    ws3 = wb.create_sheet("Patrols")
    if result.has_data:
        ws3.append(["Date", "Location", "Team Leader", "Status", "Notes"])
        style_header(ws3, 1)
        for patrol in result.patrols:
            ws3.append([
                _short_date(patrol),
                patrol.location,
                patrol.team_leader,
                patrol.status.label,
                patrol.notes or "",
            ])
        ws3.column_dimensions["E"].width = 60
    else:
        ws3.append([NO_DATA_TEXT])

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


# ============================================================================
# Convenience: render one requested format
# ============================================================================

def render_report(
    result: AggregationResult,
    title: str,
    date_range_label: str,
    fmt: str,
) -> Tuple[str, bytes, str]:
    """Render a report in the requested format.

    Returns (filename, content bytes, media type).
    """
    fmt = (fmt or "").lower()
    if fmt == "csv":
        content = to_csv(result, title, date_range_label).encode("utf-8")
    elif fmt == "html":
        content = to_html(result, title, date_range_label).encode("utf-8")
    elif fmt == "xlsx":
        content = to_xlsx(result, title, date_range_label)
    else:
        raise ValueError(f"Unsupported export format: {fmt}")

    filename = export_filename(title, fmt)
    logger.info("Rendered %s (%d patrols, %d bytes)", filename, result.patrol_count, len(content))
    return filename, content, MEDIA_TYPES[fmt]


def write_report(
    result: AggregationResult,
    title: str,
    date_range_label: str,
    formats: Iterable[str],
    export_dir: Optional[Union[str, Path]] = None,
) -> Dict[str, str]:
    """Write the report to disk in each requested format.

    Returns dict mapping format -> absolute file path.
    """
    if export_dir is None:
        export_dir = get_config("export_dir")
    out_dir = Path(export_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    paths: Dict[str, str] = {}
    for fmt in formats:
        filename, content, _ = render_report(result, title, date_range_label, fmt)
        path = out_dir / filename
        path.write_bytes(content)
        paths[fmt.lower()] = str(path.resolve())
    return paths
