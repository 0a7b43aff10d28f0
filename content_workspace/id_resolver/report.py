"""PDF rendering of the ID Resolver processing report."""

from __future__ import annotations

from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from content_workspace.id_resolver.ingestion import ResolutionReport

PRIMARY = colors.HexColor('#1e3a8a')
TEXT_DARK = colors.HexColor('#1f2937')
TEXT_LIGHT = colors.HexColor('#6b7280')
GRID = colors.HexColor('#e5e7eb')
OK_FILL = colors.HexColor('#d1fae5')
MISS_FILL = colors.HexColor('#fecaca')


def _table(data, col_widths, header_fill=PRIMARY):
    table = Table(data, colWidths=col_widths)
    table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), header_fill),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('TEXTCOLOR', (0, 1), (-1, -1), TEXT_DARK),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
        ('GRID', (0, 0), (-1, -1), 0.5, GRID),
        ('TOPPADDING', (0, 0), (-1, -1), 6),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
    ]))
    return table


def generate_resolution_pdf(report: ResolutionReport) -> BytesIO:
    """Generate the processing report PDF. Returns a rewound buffer."""
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=letter, topMargin=0.75*inch, bottomMargin=0.75*inch)
    story = []

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        'ResolverTitle',
        parent=styles['Heading1'],
        fontSize=22,
        textColor=PRIMARY,
        spaceAfter=6,
        alignment=TA_CENTER
    )
    subtitle_style = ParagraphStyle(
        'ResolverSubtitle',
        parent=styles['Normal'],
        fontSize=10,
        textColor=TEXT_LIGHT,
        spaceAfter=18,
        alignment=TA_CENTER
    )
    heading_style = ParagraphStyle(
        'ResolverHeading',
        parent=styles['Heading2'],
        fontSize=13,
        textColor=PRIMARY,
        spaceBefore=12,
        spaceAfter=8
    )
    body_style = ParagraphStyle(
        'ResolverBody',
        parent=styles['Normal'],
        fontSize=9,
        textColor=TEXT_DARK,
        spaceAfter=4,
        leading=13
    )

    stats = report.stats

    story.append(Paragraph("ID Resolver Processing Report", title_style))
    story.append(Paragraph(f"Generated {escape(report.timestamp)}", subtitle_style))

    # Status callout
    status = "Review required" if report.has_errors else "All rows resolved"
    callout = Table([[status]], colWidths=[6.5*inch])
    callout.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, -1), MISS_FILL if report.has_errors else OK_FILL),
        ('TEXTCOLOR', (0, 0), (-1, -1), TEXT_DARK),
        ('ALIGN', (0, 0), (-1, -1), 'CENTER'),
        ('FONTNAME', (0, 0), (-1, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 13),
        ('TOPPADDING', (0, 0), (-1, -1), 10),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 10),
    ]))
    story.append(callout)
    story.append(Spacer(1, 0.2*inch))

    story.append(Paragraph("Files", heading_style))
    story.append(_table(
        [
            ["Input", "File", "Rows"],
            ["Expanded Rows", report.expanded_file, str(report.expanded_row_count)],
            ["Full Library", report.library_file, str(report.library_row_count)],
            ["Lessons", report.lesson_file, str(report.lesson_row_count)],
        ],
        [1.5*inch, 4*inch, 1*inch],
    ))

    story.append(Paragraph("Matching", heading_style))
    story.append(_table(
        [
            ["", "Matched", "Unmatched"],
            ["Competency", str(stats.competency_matches), str(stats.competency_misses)],
            ["Lesson", str(stats.lesson_matches), str(stats.lesson_misses)],
        ],
        [2.5*inch, 2*inch, 2*inch],
    ))
    story.append(Spacer(1, 0.1*inch))
    story.append(Paragraph(
        f"<b>Total rows:</b> {stats.total_rows} &nbsp;&nbsp; "
        f"<b>Duplicate keys:</b> {escape(report.duplicate_policy)}",
        body_style,
    ))

    story.append(Paragraph("Column Mapping", heading_style))
    story.append(_table(
        [["Slot", "Column"]] + [[slot, column] for slot, column in report.mapping.items()],
        [3*inch, 3.5*inch],
    ))

    if report.conflicts:
        story.append(Paragraph("Key Conflicts", heading_style))
        for conflict in report.conflicts:
            story.append(Paragraph(
                f"[{escape(conflict.index)}] {escape(conflict.key)} -&gt; {escape(', '.join(conflict.ids))}",
                body_style,
            ))

    if report.flags:
        story.append(Paragraph("Flags", heading_style))
        for flag in report.flags:
            story.append(Paragraph(f"• {escape(flag)}", body_style))

    doc.build(story)
    buffer.seek(0)
    return buffer
