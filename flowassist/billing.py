"""
Invoicing
=========

Invoice arithmetic and the draft -> issued -> cancelled lifecycle.

All amounts are integer cents. Rounding is half-up:
- ht  = round_half_up(minutes * rate_cents / 60)
- vat = round_half_up(ht * vat_rate / 100)
- ttc = ht + vat

Rate priority for a (matter, user) pair: matter rate, then user rate,
then the cabinet default rate.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from .audit import record_audit
from .db.models import (
    BillingType, CabinetSettings, CreditNote, Expense, Invoice, InvoiceStatus,
    Matter, MatterStatus, TimesheetEntry, User,
)
from .errors import ConflictError, NotFoundError, ValidationError
from .tenants import ensure_cabinet_settings

logger = logging.getLogger(__name__)

DEFAULT_VAT_RATE = 20
ALLOWED_VAT_RATES = (0, 20)


class GroupingMode(str, Enum):
    SINGLE = "single"
    BY_COLLABORATOR = "by_collaborator"


# =============================================================================
# ARITHMETIC
# =============================================================================

def round_half_up(numerator: int, denominator: int = 1) -> int:
    """Round numerator/denominator to the nearest integer, halves away from zero."""
    value = Decimal(numerator) / Decimal(denominator)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_cents(cents: int, currency: str = "MAD") -> str:
    """123456 -> "1234,56 MAD"."""
    return f"{cents / 100:.2f}".replace(".", ",") + f" {currency}"


def effective_rate_cents(matter: Optional[Matter], user: Optional[User],
                         settings: Optional[CabinetSettings]) -> int:
    """Hourly rate for time spent by `user` on `matter`. Zero or missing rates fall through."""
    return (
        (matter.rate_cents if matter else None)
        or (user.rate_cents if user else None)
        or (settings.rate_cabinet_cents if settings else None)
        or 0
    )


@dataclass
class InvoiceLine:
    label: str
    minutes: int
    rate_cents: int
    vat_rate: int
    amount_ht_cents: int
    vat_cents: int
    amount_ttc_cents: int
    user_id: Optional[str] = None
    expense_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @property
    def is_expense(self) -> bool:
        return self.expense_id is not None


def compute_line_amounts(minutes: int, rate_cents: int, vat_rate: int) -> Dict[str, int]:
    amount_ht = round_half_up(minutes * rate_cents, 60)
    vat = round_half_up(amount_ht * vat_rate, 100)
    return {
        "amount_ht_cents": amount_ht,
        "vat_cents": vat,
        "amount_ttc_cents": amount_ht + vat,
    }


def _time_line(label: str, minutes: int, rate_cents: int, vat_rate: int, user_id: Optional[str] = None) -> InvoiceLine:
    return InvoiceLine(
        label=label,
        minutes=minutes,
        rate_cents=rate_cents,
        vat_rate=vat_rate,
        user_id=user_id,
        **compute_line_amounts(minutes, rate_cents, vat_rate),
    )


def build_invoice_lines(
    entries: List[TimesheetEntry],
    matter: Matter,
    users: Dict[str, User],
    settings: Optional[CabinetSettings],
    grouping: GroupingMode = GroupingMode.SINGLE,
) -> List[InvoiceLine]:
    """
    Turn billable time into invoice lines.

    single: one "Prestations juridiques" line billed at the minutes-weighted
    average of each collaborator's effective rate.
    by_collaborator: one line per user, in order of first appearance.
    """
    vat_rate = matter.vat_rate if matter.vat_rate is not None else DEFAULT_VAT_RATE

    def rate_for(user_id: str) -> int:
        return effective_rate_cents(matter, users.get(user_id), settings)

    if GroupingMode(grouping) == GroupingMode.SINGLE:
        total_minutes = sum(e.minutes_rounded for e in entries)
        if total_minutes > 0:
            weighted = sum(rate_for(e.user_id) * e.minutes_rounded for e in entries)
            rate = round_half_up(weighted, total_minutes)
        else:
            rate = rate_for(entries[0].user_id if entries else "")
        return [_time_line("Prestations juridiques", total_minutes, rate, vat_rate)]

    grouped: Dict[str, List[TimesheetEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.user_id, []).append(entry)

    lines = []
    for user_id, user_entries in grouped.items():
        user = users.get(user_id)
        label = f"Prestations - {(user.name if user else None) or 'Collaborateur'}"
        minutes = sum(e.minutes_rounded for e in user_entries)
        lines.append(_time_line(label, minutes, rate_for(user_id), vat_rate, user_id=user_id))
    return lines


def flat_fee_line(matter: Matter) -> InvoiceLine:
    vat_rate = matter.vat_rate if matter.vat_rate is not None else DEFAULT_VAT_RATE
    amount_ht = matter.flat_fee_cents or 0
    vat = round_half_up(amount_ht * vat_rate, 100)
    return InvoiceLine(
        label=f"Forfait - {matter.label}",
        minutes=0,
        rate_cents=0,
        vat_rate=vat_rate,
        amount_ht_cents=amount_ht,
        vat_cents=vat,
        amount_ttc_cents=amount_ht + vat,
    )


def expense_lines(expenses: Iterable[Expense]) -> List[InvoiceLine]:
    """Expenses are re-billed at their TTC amount with no VAT on top."""
    return [
        InvoiceLine(
            label=f"Frais - {e.nature}",
            minutes=0,
            rate_cents=0,
            vat_rate=0,
            amount_ht_cents=e.amount_ttc_cents,
            vat_cents=0,
            amount_ttc_cents=e.amount_ttc_cents,
            expense_id=e.id,
        )
        for e in expenses
    ]


def invoice_totals(lines: Iterable) -> Dict[str, int]:
    """Sum line amounts; accepts InvoiceLine objects or their dict form."""
    totals = {"total_ht_cents": 0, "total_vat_cents": 0, "total_ttc_cents": 0}
    for line in lines:
        data = line if isinstance(line, dict) else line.to_dict()
        totals["total_ht_cents"] += data["amount_ht_cents"]
        totals["total_vat_cents"] += data["vat_cents"]
        totals["total_ttc_cents"] += data["amount_ttc_cents"]
    return totals


def next_sequence_number(settings: CabinetSettings, kind: str, today: Optional[date] = None) -> str:
    """
    Consume the next number of a yearly sequence.

    kind "invoice" -> YYYY-NNNN, kind "credit" -> AV-YYYY-NNNN. The counter
    restarts at 1 when the stored year is not the current one.
    """
    year = (today or date.today()).year

    if kind == "invoice":
        if settings.invoice_seq_year != year:
            settings.invoice_seq_year = year
            settings.invoice_seq_next = 1
        seq = settings.invoice_seq_next
        settings.invoice_seq_next = seq + 1
        return f"{year}-{seq:04d}"

    if kind == "credit":
        if settings.credit_seq_year != year:
            settings.credit_seq_year = year
            settings.credit_seq_next = 1
        seq = settings.credit_seq_next
        settings.credit_seq_next = seq + 1
        return f"AV-{year}-{seq:04d}"

    raise ValueError(f"Unknown sequence kind: {kind}")


def compute_credit_note_amounts(invoice: Invoice, amount_ttc_cents: Optional[int] = None) -> Dict[str, int]:
    """Totals of a credit note; a partial note scales HT and VAT by amount / invoice TTC."""
    if amount_ttc_cents is None:
        return {
            "total_ht_cents": invoice.total_ht_cents,
            "total_vat_cents": invoice.total_vat_cents,
            "total_ttc_cents": invoice.total_ttc_cents,
        }

    if amount_ttc_cents <= 0 or amount_ttc_cents > invoice.total_ttc_cents:
        raise ValidationError("Credit note amount must be positive and not exceed the invoice total")

    ttc = invoice.total_ttc_cents
    return {
        "total_ht_cents": round_half_up(invoice.total_ht_cents * amount_ttc_cents, ttc),
        "total_vat_cents": round_half_up(invoice.total_vat_cents * amount_ttc_cents, ttc),
        "total_ttc_cents": amount_ttc_cents,
    }


# =============================================================================
# QUERIES
# =============================================================================

def billable_entries(db: Session, tenant_id: str, matter_id: str,
                     period_from: date, period_to: date) -> List[TimesheetEntry]:
    return (
        db.query(TimesheetEntry)
        .filter(
            TimesheetEntry.tenant_id == tenant_id,
            TimesheetEntry.matter_id == matter_id,
            TimesheetEntry.billable == True,
            TimesheetEntry.locked == False,
            TimesheetEntry.invoice_id == None,
            TimesheetEntry.date >= period_from,
            TimesheetEntry.date <= period_to,
        )
        .order_by(TimesheetEntry.date.asc(), TimesheetEntry.created_at.asc())
        .all()
    )


def billable_expenses(db: Session, tenant_id: str, matter_id: str,
                      period_from: date, period_to: date) -> List[Expense]:
    return (
        db.query(Expense)
        .filter(
            Expense.tenant_id == tenant_id,
            Expense.matter_id == matter_id,
            Expense.billable == True,
            Expense.locked == False,
            Expense.invoice_id == None,
            Expense.expense_date >= period_from,
            Expense.expense_date <= period_to,
        )
        .order_by(Expense.expense_date.asc())
        .all()
    )


def get_invoice(db: Session, tenant_id: str, invoice_id: str) -> Invoice:
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id).first()
    if not invoice:
        raise NotFoundError("Invoice not found")
    return invoice


def _users_by_id(db: Session, user_ids: Iterable[str]) -> Dict[str, User]:
    ids = set(user_ids)
    if not ids:
        return {}
    return {u.id: u for u in db.query(User).filter(User.id.in_(ids)).all()}


# =============================================================================
# LIFECYCLE
# =============================================================================

def compute_draft_lines(db: Session, tenant_id: str, matter: Matter, period_from: date, period_to: date,
                        grouping: GroupingMode = GroupingMode.SINGLE,
                        include_expenses: bool = True) -> List[InvoiceLine]:
    settings = ensure_cabinet_settings(db, tenant_id)
    expenses = billable_expenses(db, tenant_id, matter.id, period_from, period_to) if include_expenses else []

    if matter.billing_type == BillingType.FLAT_FEE:
        lines = [flat_fee_line(matter)]
    else:
        entries = billable_entries(db, tenant_id, matter.id, period_from, period_to)
        if not entries and not expenses:
            raise ValidationError("Nothing to invoice for this matter and period")
        lines = []
        if entries:
            users = _users_by_id(db, (e.user_id for e in entries))
            lines = build_invoice_lines(entries, matter, users, settings, grouping)

    lines += expense_lines(expenses)
    if matter.billing_type != BillingType.FLAT_FEE and invoice_totals(lines)["total_ttc_cents"] == 0:
        raise ValidationError("All invoice amounts are zero; set an hourly rate for the matter, the collaborators or the cabinet")
    return lines


def create_draft_invoice(db: Session, tenant_id: str, user_id: str, matter_id: str,
                         period_from: date, period_to: date,
                         grouping: GroupingMode = GroupingMode.SINGLE,
                         include_expenses: bool = True) -> Invoice:
    if period_from > period_to:
        raise ValidationError("period_from must be on or before period_to")

    matter = db.query(Matter).filter(Matter.id == matter_id, Matter.tenant_id == tenant_id).first()
    if not matter:
        raise NotFoundError("Matter not found")

    lines = compute_draft_lines(db, tenant_id, matter, period_from, period_to, grouping, include_expenses)
    line_dicts = [line.to_dict() for line in lines]

    invoice = Invoice(
        tenant_id=tenant_id,
        matter_id=matter.id,
        status=InvoiceStatus.DRAFT,
        period_from=period_from,
        period_to=period_to,
        lines=line_dicts,
        created_by=user_id,
        **invoice_totals(line_dicts),
    )
    db.add(invoice)
    db.flush()
    logger.info(f"Draft invoice {invoice.id} created for matter {matter.code} ({len(line_dicts)} lines)")
    return invoice


def recompute_draft(db: Session, tenant_id: str, invoice_id: str,
                    grouping: GroupingMode = GroupingMode.SINGLE,
                    include_expenses: bool = True) -> Invoice:
    invoice = get_invoice(db, tenant_id, invoice_id)
    if invoice.status != InvoiceStatus.DRAFT:
        raise ConflictError("Only draft invoices can be recomputed")

    matter = db.query(Matter).filter(Matter.id == invoice.matter_id).first()
    line_dicts = [
        line.to_dict()
        for line in compute_draft_lines(db, tenant_id, matter, invoice.period_from, invoice.period_to,
                                        grouping, include_expenses)
    ]
    invoice.lines = line_dicts
    for key, value in invoice_totals(line_dicts).items():
        setattr(invoice, key, value)
    db.flush()
    return invoice


def issue_invoice(db: Session, tenant_id: str, user_id: str, invoice_id: str,
                  today: Optional[date] = None) -> Invoice:
    """Number a draft, lock the time and expenses it bills, and log the issue."""
    today = today or date.today()
    invoice = get_invoice(db, tenant_id, invoice_id)
    if invoice.status != InvoiceStatus.DRAFT:
        raise ConflictError("Only draft invoices can be issued")

    settings = ensure_cabinet_settings(db, tenant_id)
    invoice.number = next_sequence_number(settings, "invoice", today)
    invoice.status = InvoiceStatus.ISSUED
    invoice.issue_date = today

    entries = billable_entries(db, tenant_id, invoice.matter_id, invoice.period_from, invoice.period_to)
    for entry in entries:
        entry.locked = True
        entry.invoice_id = invoice.id

    billed_expense_ids = {line.get("expense_id") for line in (invoice.lines or []) if line.get("expense_id")}
    if billed_expense_ids:
        for expense in db.query(Expense).filter(Expense.id.in_(billed_expense_ids), Expense.tenant_id == tenant_id).all():
            expense.locked = True
            expense.invoice_id = invoice.id

    record_audit(db, tenant_id, user_id, "issue_invoice", "invoice", invoice.id,
                 {"invoice_number": invoice.number, "locked_entries": len(entries)})
    db.flush()
    logger.info(f"Invoice {invoice.number} issued, {len(entries)} entries locked")
    return invoice


def set_invoice_paid(db: Session, tenant_id: str, user_id: str, invoice_id: str,
                     paid: bool, payment_date: Optional[date] = None) -> Invoice:
    invoice = get_invoice(db, tenant_id, invoice_id)
    if invoice.status != InvoiceStatus.ISSUED:
        raise ConflictError("Only issued invoices can be marked as paid")

    invoice.paid = paid
    invoice.payment_date = (payment_date or date.today()) if paid else None
    record_audit(db, tenant_id, user_id, "mark_paid" if paid else "mark_unpaid", "invoice", invoice.id,
                 {"payment_date": invoice.payment_date.isoformat() if invoice.payment_date else None})
    db.flush()
    return invoice


def delete_draft_invoice(db: Session, tenant_id: str, invoice_id: str) -> None:
    invoice = get_invoice(db, tenant_id, invoice_id)
    if invoice.status != InvoiceStatus.DRAFT:
        raise ConflictError("Only draft invoices can be deleted")
    db.delete(invoice)
    db.flush()


def create_credit_note(db: Session, tenant_id: str, user_id: str, invoice_id: str,
                       reason: Optional[str] = None, amount_ttc_cents: Optional[int] = None,
                       today: Optional[date] = None) -> CreditNote:
    """
    Credit an issued invoice.

    Without an amount the note covers the whole invoice, which becomes
    cancelled. With an amount the invoice stays issued.
    """
    today = today or date.today()
    invoice = get_invoice(db, tenant_id, invoice_id)
    if invoice.status != InvoiceStatus.ISSUED:
        raise ConflictError("Credit notes can only be created for issued invoices")

    totals = compute_credit_note_amounts(invoice, amount_ttc_cents)
    if amount_ttc_cents is None:
        invoice.status = InvoiceStatus.CANCELLED

    settings = ensure_cabinet_settings(db, tenant_id)
    note = CreditNote(
        tenant_id=tenant_id,
        invoice_id=invoice.id,
        number=next_sequence_number(settings, "credit", today),
        issue_date=today,
        reason=reason,
        **totals,
    )
    db.add(note)
    db.flush()

    record_audit(db, tenant_id, user_id, "create_credit_note", "credit_note", note.id,
                 {"credit_number": note.number, "invoice_id": invoice.id, "reason": reason})
    logger.info(f"Credit note {note.number} created for invoice {invoice.number}")
    return note


def open_matter_or_error(db: Session, tenant_id: str, matter_id: str) -> Matter:
    matter = db.query(Matter).filter(Matter.id == matter_id, Matter.tenant_id == tenant_id).first()
    if not matter:
        raise NotFoundError("Matter not found")
    if matter.status != MatterStatus.OPEN:
        raise ConflictError("Matter is closed")
    return matter


# =============================================================================
# CABINET SETTINGS
# =============================================================================

SETTINGS_FIELDS = ("name", "address", "iban", "mentions", "rate_cabinet_cents", "vat_default")


def update_cabinet_settings(db: Session, tenant_id: str, user_id: str, **changes) -> CabinetSettings:
    settings = ensure_cabinet_settings(db, tenant_id)
    data = {k: v for k, v in changes.items() if k in SETTINGS_FIELDS and v is not None}

    if "vat_default" in data and data["vat_default"] not in ALLOWED_VAT_RATES:
        raise ValidationError("vat_default must be 0 or 20")
    if data.get("rate_cabinet_cents", 0) < 0:
        raise ValidationError("Rate must be positive")
    if "name" in data and not data["name"].strip():
        raise ValidationError("Cabinet name is required")

    for key, value in data.items():
        setattr(settings, key, value)
    record_audit(db, tenant_id, user_id, "update_settings", "cabinet_settings", settings.id,
                 {"fields": sorted(data)})
    db.flush()
    return settings
