"""
Invoice Exporter
================

Generate DOCX and PDF renditions of an invoice.
"""

from io import BytesIO
from typing import Any, Dict, List, Optional

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from .billing import format_cents
from .config import get_settings
from .db.models import InvoiceStatus
from .timesheet import format_minutes_to_hours

STATUS_BANNERS = {
    InvoiceStatus.DRAFT: "BROUILLON",
    InvoiceStatus.CANCELLED: "ANNULÉE",
}

LINE_HEADERS = ["Description", "Heures", "Taux", "Montant HT"]


def _fr_date(value) -> str:
    return value.strftime("%d/%m/%Y") if value else "_______________"


def _line_row(line: Dict[str, Any], currency: str) -> List[str]:
    is_expense = bool(line.get("expense_id")) or str(line.get("label", "")).startswith("Frais -")
    return [
        line.get("label", ""),
        "-" if is_expense else format_minutes_to_hours(line.get("minutes") or 0),
        "-" if is_expense else format_cents(line.get("rate_cents") or 0, currency),
        format_cents(line.get("amount_ht_cents") or 0, currency),
    ]


def invoice_layout(invoice, settings, client, matter) -> Dict[str, Any]:
    """Text blocks shared by the DOCX and PDF renditions."""
    currency = get_settings().currency_label
    lines = invoice.lines or []
    vat_rate = lines[0].get("vat_rate", 20) if lines else 20

    cabinet = [settings.name] if settings else ["Cabinet"]
    if settings and settings.address:
        cabinet += settings.address.splitlines()

    client_block = [client.name] if client else []
    if client and client.address:
        client_block += client.address.splitlines()
    if client and client.vat_number:
        client_block.append(f"ICE : {client.vat_number}")

    footer = []
    if settings and settings.iban:
        footer.append(f"IBAN : {settings.iban}")
    if settings and settings.mentions:
        footer += settings.mentions.splitlines()

    return {
        "cabinet": cabinet,
        "client": client_block,
        "title": f"FACTURE N° {invoice.number}" if invoice.number else "FACTURE",
        "banner": STATUS_BANNERS.get(invoice.status),
        "issue_date": f"Date : {_fr_date(invoice.issue_date)}",
        "matter": f"Dossier : {matter.code} - {matter.label}" if matter else "",
        "period": f"Période : du {_fr_date(invoice.period_from)} au {_fr_date(invoice.period_to)}",
        "rows": [_line_row(line, currency) for line in lines],
        "totals": [
            ("Total HT", format_cents(invoice.total_ht_cents, currency)),
            (f"TVA {vat_rate}%", format_cents(invoice.total_vat_cents, currency)),
            ("Total TTC", format_cents(invoice.total_ttc_cents, currency)),
        ],
        "footer": footer,
    }


def build_invoice_docx(invoice, settings, client, matter) -> bytes:
    layout = invoice_layout(invoice, settings, client, matter)
    doc = Document()

    for idx, text in enumerate(layout["cabinet"]):
        p = doc.add_paragraph(text)
        if idx == 0:
            p.runs[0].bold = True

    client_heading = doc.add_paragraph("A l'aimable attention de")
    client_heading.alignment = WD_ALIGN_PARAGRAPH.RIGHT
    for text in layout["client"]:
        p = doc.add_paragraph(text)
        p.alignment = WD_ALIGN_PARAGRAPH.RIGHT

    doc.add_heading(layout["title"], level=1)
    if layout["banner"]:
        doc.add_paragraph(layout["banner"]).runs[0].bold = True
    doc.add_paragraph(layout["issue_date"])
    if layout["matter"]:
        doc.add_paragraph(layout["matter"])
    doc.add_paragraph(layout["period"])

    table = doc.add_table(rows=1, cols=len(LINE_HEADERS))
    table.style = "Table Grid"
    for cell, header in zip(table.rows[0].cells, LINE_HEADERS):
        cell.text = header
    for row in layout["rows"]:
        cells = table.add_row().cells
        for idx, value in enumerate(row):
            cells[idx].text = value
            if idx > 0:
                cells[idx].paragraphs[0].alignment = WD_ALIGN_PARAGRAPH.RIGHT

    doc.add_paragraph("")
    for label, amount in layout["totals"]:
        p = doc.add_paragraph(f"{label} : {amount}")
        p.alignment = WD_ALIGN_PARAGRAPH.RIGHT
        if label == "Total TTC":
            p.runs[0].bold = True

    for text in layout["footer"]:
        doc.add_paragraph(text)

    buf = BytesIO()
    doc.save(buf)
    return buf.getvalue()


def build_invoice_pdf(invoice, settings, client, matter) -> bytes:
    layout = invoice_layout(invoice, settings, client, matter)

    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    width, height = A4
    left, right = 40, width - 40
    y = height - 50

    def ensure_space(size: int) -> None:
        nonlocal y
        if y < 80:
            c.showPage()
            y = height - 50
        c.setFont("Helvetica", size)

    def draw_text(text: str, size: int = 11, align: str = "left", bold: bool = False) -> None:
        nonlocal y
        ensure_space(size)
        c.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        if align == "right":
            c.drawRightString(right, y, text)
        else:
            c.drawString(left, y, text)
        y -= size + 6

    def draw_row(values: List[str], size: int = 10, bold: bool = False) -> None:
        nonlocal y
        ensure_space(size)
        c.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        c.drawString(left, y, values[0][:70])
        c.drawRightString(right - 220, y, values[1])
        c.drawRightString(right - 110, y, values[2])
        c.drawRightString(right, y, values[3])
        y -= size + 6

    for idx, text in enumerate(layout["cabinet"]):
        draw_text(text, 13 if idx == 0 else 10, bold=idx == 0)
    y -= 10
    draw_text("A l'aimable attention de", 9, align="right")
    for text in layout["client"]:
        draw_text(text, 11, align="right")
    y -= 10

    draw_text(layout["title"], 16, bold=True)
    if layout["banner"]:
        draw_text(layout["banner"], 12, bold=True)
    draw_text(layout["issue_date"], 10)
    if layout["matter"]:
        draw_text(layout["matter"], 10)
    draw_text(layout["period"], 10)
    y -= 10

    draw_row(LINE_HEADERS, bold=True)
    c.line(left, y + 12, right, y + 12)
    for row in layout["rows"]:
        draw_row(row)
    c.line(left, y + 12, right, y + 12)
    y -= 6

    for label, amount in layout["totals"]:
        draw_text(f"{label} : {amount}", 11, align="right", bold=label == "Total TTC")
    y -= 10
    for text in layout["footer"]:
        draw_text(text, 9)

    c.showPage()
    c.save()
    return buf.getvalue()


def invoice_filename(invoice, extension: str, matter: Optional[Any] = None) -> str:
    reference = invoice.number or f"brouillon_{(matter.code if matter else invoice.id[:8])}"
    return f"facture_{reference}.{extension}"
