"""Blend sheet: the printable record of a blend.

``build_blend_sheet`` is a pure projection of a stored blend into the
layout the blending floor signs off:

    BLENDING SHEET                          Date: 07/10/2025
                                            SR #: 3
                                            Lot #: HG-2510-MFI-07003
    Blending Bloom: 190-210
    Mesh: 20

    S.No.  Batch NO.   Bloom  Bags
    1      12          180    10
    2      4 (O)       220    10
    TOTAL              400    20

    Average Bloom: 200
    Weight (Kg): 500

Rendering (PDF via ReportLab, CSV) only formats that projection.  PDFs are
produced in ReportLab's invariant mode so the same blend always renders to
the same bytes.
"""

import io
import json
from dataclasses import dataclass, field
from datetime import datetime
from xml.sax.saxutils import escape

import segno
from reportlab.graphics.shapes import Drawing, Rect
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from gelatin_erp.config import settings
from gelatin_erp.models.batch import BatchType
from gelatin_erp.utils.csv_import import read_csv_text, write_csv

TITLE = "BLENDING SHEET"
OUTSOURCE_MARKER = " (O)"
CSV_HEADERS = ["S.No.", "Batch NO.", "Bloom", "Bags"]

# (label, average attribute, target attribute); printed only when present
SUMMARY_ATTRIBUTES = (
    ("Viscosity", "average_viscosity", "target_viscosity"),
    ("Percentage", "average_percentage", "target_percentage"),
    ("pH", "average_ph", "target_ph"),
    ("Conductivity", "average_conductivity", "target_conductivity"),
    ("Moisture", "average_moisture", "target_moisture"),
    ("H2O2", "average_h2o2", "target_h2o2"),
    ("SO2", "average_so2", "target_so2"),
    ("Color", None, "target_color"),
    ("Clarity", None, "target_clarity"),
    ("Odour", None, "target_odour"),
)


# ── Projection ──────────────────────────────────────────────


@dataclass
class SheetRow:
    sequence: int
    batch_number: int
    is_outsource: bool
    bloom: float | None
    bags: int

    @property
    def label(self) -> str:
        return f"{self.batch_number}{OUTSOURCE_MARKER if self.is_outsource else ''}"


@dataclass
class BlendSheet:
    company_name: str
    lot_number: str
    serial_number: int
    fiscal_year: str
    blend_date: datetime
    bloom_range: str
    mesh: str | None
    rows: list[SheetRow]
    total_bloom: float
    total_bags: int
    summary: list[tuple[str, str]] = field(default_factory=list)
    notes: str | None = None

    @property
    def date_text(self) -> str:
        return self.blend_date.strftime("%d/%m/%Y")


def _number(value: float | None, digits: int = 2) -> str:
    """Compact display: 200.0 -> "200", 3.456 -> "3.46"."""
    if value is None:
        return ""
    rounded = round(value, digits)
    if float(rounded).is_integer():
        return str(int(rounded))
    return f"{rounded:.{digits}f}".rstrip("0").rstrip(".")


def build_blend_sheet(blend) -> BlendSheet:
    """Project a blend (and its batch snapshots) onto the sheet layout."""
    rows = [
        SheetRow(
            sequence=index,
            batch_number=item.batch_number,
            is_outsource=item.batch_type == BatchType.OUTSOURCE.value,
            bloom=item.bloom,
            bags=item.bags,
        )
        for index, item in enumerate(blend.selected_batches, start=1)
    ]

    summary = [
        ("Average Bloom", _number(blend.average_bloom, 0)),
        ("Weight (Kg)", f"{blend.total_weight_kg:,.0f}"),
    ]
    for label, average_attr, target_attr in SUMMARY_ATTRIBUTES:
        if average_attr and getattr(blend, average_attr) is not None:
            summary.append((f"Average {label}", _number(getattr(blend, average_attr))))
        target = getattr(blend, target_attr)
        if target is not None and target != "":
            value = target if isinstance(target, str) else _number(target)
            summary.append((f"Target {label}", value))

    return BlendSheet(
        company_name=settings.company_name,
        lot_number=blend.lot_number,
        serial_number=blend.serial_number,
        fiscal_year=blend.fiscal_year,
        blend_date=blend.blend_date,
        bloom_range=f"{_number(blend.target_bloom_min)}-{_number(blend.target_bloom_max)}",
        mesh=_number(blend.target_mesh) if blend.target_mesh is not None else None,
        rows=rows,
        total_bloom=sum(r.bloom or 0 for r in rows),
        total_bags=sum(r.bags for r in rows),
        summary=summary,
        notes=blend.notes,
    )


# ── CSV ─────────────────────────────────────────────────────


def sheet_rows_to_csv(rows: list[SheetRow]) -> str:
    return write_csv(
        CSV_HEADERS,
        (
            {
                "S.No.": r.sequence,
                "Batch NO.": r.label,
                "Bloom": r.bloom,
                "Bags": r.bags,
            }
            for r in rows
        ),
    )


def export_blend_sheet_csv(blend) -> str:
    """Sheet rows as CSV: header plus one line per batch."""
    return sheet_rows_to_csv(build_blend_sheet(blend).rows)


def parse_blend_sheet_csv(text: str) -> list[SheetRow]:
    """Read rows written by ``export_blend_sheet_csv`` back into SheetRows."""
    rows = []
    for raw in read_csv_text(text):
        label = raw["Batch NO."].strip()
        is_outsource = label.endswith(OUTSOURCE_MARKER)
        if is_outsource:
            label = label[: -len(OUTSOURCE_MARKER)]
        bloom = raw["Bloom"].strip()
        rows.append(
            SheetRow(
                sequence=int(raw["S.No."]),
                batch_number=int(label),
                is_outsource=is_outsource,
                bloom=float(bloom) if bloom else None,
                bags=int(raw["Bags"]),
            )
        )
    return rows


# ── PDF ─────────────────────────────────────────────────────


def _qr_drawing(payload: str, size: float = 28 * mm) -> Drawing:
    """Vector QR code, one rectangle per dark module."""
    qr = segno.make(payload, error="m")
    matrix = qr.matrix
    modules = len(matrix)
    cell = size / modules
    drawing = Drawing(size, size)
    for y, row in enumerate(matrix):
        for x, dark in enumerate(row):
            if dark:
                drawing.add(
                    Rect(
                        x * cell, size - (y + 1) * cell, cell, cell,
                        fillColor=colors.black, strokeColor=None, strokeWidth=0,
                    )
                )
    return drawing


def _qr_payload(sheet: BlendSheet) -> str:
    return json.dumps(
        {
            "lot": sheet.lot_number,
            "sr": sheet.serial_number,
            "fy": sheet.fiscal_year,
            "bags": sheet.total_bags,
        },
        separators=(",", ":"),
    )


def render_blend_sheet_pdf(blend) -> bytes:
    """Render the blend sheet to PDF bytes (A4, Helvetica)."""
    sheet = build_blend_sheet(blend)
    styles = getSampleStyleSheet()
    normal = ParagraphStyle("sheet", parent=styles["Normal"], fontName="Helvetica", fontSize=11)
    title = ParagraphStyle(
        "sheet-title", parent=styles["Title"], fontName="Helvetica-Bold",
        fontSize=18, alignment=0,
    )

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=15 * mm,
        bottomMargin=15 * mm,
        title=f"Blending Sheet {sheet.lot_number}",
        author=sheet.company_name,
        invariant=1,
    )

    # Header: company + title on the left, date / SR / lot and QR on the right
    left = [
        Paragraph(f"<b>{escape(sheet.company_name.upper())}</b>", normal),
        Spacer(1, 4 * mm),
        Paragraph(TITLE, title),
    ]
    right = [
        Paragraph(f"Date: {sheet.date_text}", normal),
        Paragraph(f"SR #: {sheet.serial_number}", normal),
        Paragraph(f"Lot #: {escape(sheet.lot_number)}", normal),
    ]
    header = Table(
        [[left, right, _qr_drawing(_qr_payload(sheet))]],
        colWidths=[80 * mm, 60 * mm, 32 * mm],
    )
    header.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP")]))

    story = [header, Spacer(1, 6 * mm)]
    story.append(Paragraph(f"Blending Bloom: {sheet.bloom_range}", normal))
    if sheet.mesh is not None:
        story.append(Paragraph(f"Mesh: {sheet.mesh}", normal))
    story.append(Spacer(1, 5 * mm))

    data = [["S.No.", "Batch NO.", "Bloom", "Bags"]]
    for row in sheet.rows:
        data.append([str(row.sequence), row.label, _number(row.bloom, 0) or "0", str(row.bags)])
    data.append(["TOTAL", "", _number(sheet.total_bloom, 0), str(sheet.total_bags)])

    table = Table(data, colWidths=[20 * mm, 40 * mm, 30 * mm, 30 * mm], repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTNAME", (0, 1), (-1, -2), "Helvetica"),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 10),
                ("LINEBELOW", (0, 0), (-1, 0), 0.8, colors.black),
                ("LINEABOVE", (0, -1), (-1, -1), 0.8, colors.black),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("ALIGN", (2, 0), (-1, -1), "RIGHT"),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
            ]
        )
    )
    story += [table, Spacer(1, 6 * mm)]

    for label, value in sheet.summary:
        story.append(Paragraph(f"{label}: {escape(value)}", normal))
    if sheet.notes:
        story += [Spacer(1, 4 * mm), Paragraph(f"Notes: {escape(sheet.notes)}", normal)]

    doc.build(story)
    return buffer.getvalue()
