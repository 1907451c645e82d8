"""
CSV Exports
===========

Spreadsheet-friendly exports (`;` separated, UTF-8 with BOM so Excel opens
accented headers correctly). Builders take rows plus lookup dicts keyed by id
and return the CSV text; `csv_bytes` adds the BOM for the HTTP response.
"""

from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .analytics import AGING_BUCKETS, GROUP_CLIENT, GROUP_COLLABORATOR, GROUP_MATTER
from .db.models import InvoiceStatus

SEPARATOR = ";"
BOM = "\ufeff"

INVOICE_STATUS_LABELS = {
    InvoiceStatus.DRAFT: "Brouillon",
    InvoiceStatus.ISSUED: "Émise",
    InvoiceStatus.CANCELLED: "Annulée",
}

TIMESHEET_HEADERS = [
    "Date", "Collaborateur Email", "Dossier Code", "Dossier Libellé", "Client Code",
    "Minutes Arrondies", "Heures", "Facturable", "Description", "Verrouillé", "N° Facture",
]
KPI_USER_HEADERS = ["Collaborateur Email", "Collaborateur Nom", "Minutes Facturables", "Heures Facturables"]
KPI_MATTER_HEADERS = ["Dossier Code", "Dossier Libellé", "Client Code", "Minutes Facturables", "Heures Facturables"]
INVOICE_HEADERS = [
    "N° Facture", "Date Émission", "Dossier Code", "Client Code", "Client Nom",
    "Période Du", "Période Au", "Total HT", "Total TVA", "Total TTC", "Statut",
]
CREDIT_NOTE_HEADERS = [
    "N° Avoir", "Date Émission", "N° Facture Liée", "Total HT", "Total TVA", "Total TTC", "Raison",
]
WIP_AGING_HEADERS = ["Minutes", "Heures", "< 30 j", "30-60 j", "60-90 j", "90-120 j", "> 120 j"]


def escape_csv(value: Any) -> str:
    if value is None:
        return ""
    text = str(value)
    if "," in text or '"' in text or "\n" in text:
        return '"' + text.replace('"', '""') + '"'
    return text


def to_csv(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    lines = [SEPARATOR.join(headers)]
    for row in rows:
        lines.append(SEPARATOR.join(escape_csv(v) for v in row))
    return "\n".join(lines)


def csv_bytes(content: str) -> bytes:
    return (BOM + content).encode("utf-8")


def yes_no(value: bool) -> str:
    return "Oui" if value else "Non"


def hours(minutes: int) -> str:
    return f"{(minutes or 0) / 60:.2f}"


def money(cents: int) -> str:
    return f"{(cents or 0) / 100:.2f}"


def _iso(value: Optional[date]) -> str:
    return value.isoformat() if value else ""


# =============================================================================
# FILE NAMES
# =============================================================================

def dated_filename(prefix: str, today: Optional[date] = None) -> str:
    """timesheet_2026-01-31.csv style name."""
    return f"{prefix}_{(today or date.today()).isoformat()}.csv"


def period_filename(prefix: str, date_from: date, date_to: date) -> str:
    return f"{prefix}_{date_from.isoformat()}_{date_to.isoformat()}.csv"


# =============================================================================
# BUILDERS
# =============================================================================

def timesheet_csv(entries: Iterable, users: Dict, matters: Dict, clients: Dict, invoices: Dict) -> str:
    rows = []
    for e in entries:
        user = users.get(e.user_id)
        matter = matters.get(e.matter_id)
        client = clients.get(matter.client_id) if matter else None
        invoice = invoices.get(e.invoice_id) if e.invoice_id else None
        rows.append([
            _iso(e.date),
            user.email if user else "",
            matter.code if matter else "",
            matter.label if matter else "",
            client.code if client else "",
            e.minutes_rounded,
            hours(e.minutes_rounded),
            yes_no(e.billable),
            e.description,
            yes_no(e.locked),
            (invoice.number if invoice else None) or "",
        ])
    return to_csv(TIMESHEET_HEADERS, rows)


def kpi_by_user_csv(rows: Iterable[Dict]) -> str:
    return to_csv(KPI_USER_HEADERS, [
        [r["user_email"], r["user_name"], r["billable_minutes"], hours(r["billable_minutes"])]
        for r in rows
    ])


def kpi_by_matter_csv(rows: Iterable[Dict]) -> str:
    return to_csv(KPI_MATTER_HEADERS, [
        [r["matter_code"], r["matter_label"], r["client_code"], r["billable_minutes"], hours(r["billable_minutes"])]
        for r in rows
    ])


def invoices_csv(invoices: Iterable, matters: Dict, clients: Dict) -> str:
    rows = []
    for inv in invoices:
        matter = matters.get(inv.matter_id)
        client = clients.get(matter.client_id) if matter else None
        rows.append([
            inv.number or "Brouillon",
            _iso(inv.issue_date),
            matter.code if matter else "",
            client.code if client else "",
            client.name if client else "",
            _iso(inv.period_from),
            _iso(inv.period_to),
            money(inv.total_ht_cents),
            money(inv.total_vat_cents),
            money(inv.total_ttc_cents),
            INVOICE_STATUS_LABELS.get(inv.status, str(inv.status)),
        ])
    return to_csv(INVOICE_HEADERS, rows)


def credit_notes_csv(credit_notes: Iterable, invoices: Dict) -> str:
    rows = []
    for cn in credit_notes:
        invoice = invoices.get(cn.invoice_id)
        rows.append([
            cn.number or "",
            _iso(cn.issue_date),
            (invoice.number if invoice else None) or "",
            money(cn.total_ht_cents),
            money(cn.total_vat_cents),
            money(cn.total_ttc_cents),
            cn.reason or "",
        ])
    return to_csv(CREDIT_NOTE_HEADERS, rows)


def wip_aging_csv(rows: Iterable[Dict], grouping: Sequence[str]) -> str:
    headers: List[str] = []
    if GROUP_COLLABORATOR in grouping:
        headers += ["Collaborateur", "Email"]
    if GROUP_CLIENT in grouping:
        headers += ["Code Client", "Client"]
    if GROUP_MATTER in grouping:
        headers += ["Code", "Dossier"]
    headers += WIP_AGING_HEADERS

    lines = []
    for row in rows:
        cols: List[Any] = []
        if GROUP_COLLABORATOR in grouping:
            cols += [row.get("user_name") or "", row.get("user_email") or ""]
        if GROUP_CLIENT in grouping:
            cols += [row.get("client_code") or "", row.get("client_name") or ""]
        if GROUP_MATTER in grouping:
            cols += [row.get("matter_code") or "", row.get("matter_label") or ""]
        cols += [row["billable_minutes"], hours(row["billable_minutes"])]
        cols += [hours(row["aging"][bucket]) for bucket in AGING_BUCKETS]
        lines.append(cols)
    return to_csv(headers, lines)
