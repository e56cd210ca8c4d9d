"""
File renderers for export jobs.

CSV and XLSX render a ``TabularData``; PDF renders a ``Document``; JSON
dumps the fetched report data as is. All renderers return bytes.
"""

import csv
import io
import json
from datetime import datetime
from typing import Any, Dict
from xml.sax.saxutils import escape

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .models import ExportFormat, ExportOptions, ExportRecord
from .templates import Document, ReportTemplate, TabularData


def render_csv(table: TabularData, options: ExportOptions) -> bytes:
    """Values containing the delimiter, a quote or a newline are quoted."""
    buffer = io.StringIO()
    writer = csv.writer(
        buffer,
        delimiter=options.delimiter,
        quotechar='"',
        quoting=csv.QUOTE_MINIMAL,
        lineterminator="\n",
    )
    if options.include_headers:
        writer.writerow(table.headers)
    for row in table.rows:
        writer.writerow(["" if row.get(h) is None else row.get(h) for h in table.headers])
    return buffer.getvalue().encode("utf-8")


def render_json(data: Dict[str, Any], record: ExportRecord) -> bytes:
    payload = {
        "exportId": record.id,
        "projectId": record.project_id,
        "reportType": record.report_type.value,
        "dateRange": record.date_range.to_wire(),
        "data": data,
    }
    return json.dumps(payload, indent=2, default=_json_default).encode("utf-8")


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def render_xlsx(table: TabularData, record: ExportRecord) -> bytes:
    wb = openpyxl.Workbook()

    ws = wb.active
    ws.title = record.report_type.value.capitalize()
    ws.append(table.headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for row in table.rows:
        ws.append([row.get(h) for h in table.headers])

    for column_cells in ws.columns:
        length = max(len(str(cell.value or "")) for cell in column_cells)
        ws.column_dimensions[get_column_letter(column_cells[0].column)].width = min(length + 2, 50)

    ws_meta = wb.create_sheet("Metadata")
    ws_meta.append(["Field", "Value"])
    ws_meta.append(["Export ID", record.id])
    ws_meta.append(["Project ID", record.project_id])
    ws_meta.append(["Start", record.date_range.start.isoformat()])
    ws_meta.append(["End", record.date_range.end.isoformat()])

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


_TABLE_STYLE = TableStyle([
    ('BACKGROUND', (0, 0), (-1, 0), colors.darkblue),
    ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
    ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
    ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
    ('BOTTOMPADDING', (0, 0), (-1, 0), 8),
    ('BACKGROUND', (0, 1), (-1, -1), colors.beige),
    ('GRID', (0, 0), (-1, -1), 0.5, colors.black),
])


def render_pdf(document: Document) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, title=document.title)
    styles = getSampleStyleSheet()

    story = [
        Paragraph(escape(document.title), styles['Title']),
        Paragraph(escape(document.subtitle), styles['Normal']),
        Spacer(1, 12),
    ]
    for section in document.sections:
        story.append(Paragraph(escape(section.title), styles['Heading2']))
        if section.kind == "metrics":
            rows = [["Metric", "Value", "Change"]]
            for metric in section.content:
                change = metric.get("change")
                rows.append([
                    str(metric["label"]),
                    str(metric["value"]),
                    f"{change:+.2f}%" if change is not None else "-",
                ])
            story.append(_table(rows))
        elif section.kind == "table":
            rows = [section.content["headers"]] + section.content["rows"]
            story.append(_table(rows) if section.content["rows"] else Paragraph("No data", styles['Italic']))
        else:
            story.append(Paragraph(escape(str(section.content)), styles['Normal']))
        story.append(Spacer(1, 12))

    if document.footer:
        story.append(Paragraph(escape(document.footer), styles['Italic']))

    doc.build(story)
    return buffer.getvalue()


def _table(rows) -> Table:
    table = Table([[str(cell) for cell in row] for row in rows], repeatRows=1)
    table.setStyle(_TABLE_STYLE)
    return table


def render(
    export_format: ExportFormat,
    template: ReportTemplate,
    data: Dict[str, Any],
    record: ExportRecord
) -> bytes:
    """Render fetched report data in the requested format."""
    if export_format == ExportFormat.CSV:
        return render_csv(template.tabular(data), record.options)
    if export_format == ExportFormat.XLSX:
        return render_xlsx(template.tabular(data), record)
    if export_format == ExportFormat.PDF:
        return render_pdf(template.document(data, record))
    return render_json(data, record)


def row_count(template: ReportTemplate, data: Dict[str, Any]) -> int:
    return len(template.tabular(data).rows)
