"""
Invoicing Tests
===============

Invoice arithmetic, numbering and the draft -> issued -> cancelled lifecycle.
"""

from datetime import date
from types import SimpleNamespace

import pytest

from flowassist.billing import (
    GroupingMode,
    build_invoice_lines,
    compute_credit_note_amounts,
    compute_line_amounts,
    effective_rate_cents,
    expense_lines,
    format_cents,
    invoice_totals,
    next_sequence_number,
    round_half_up,
)
from flowassist.errors import ConflictError, ValidationError


def _entry(user_id, minutes):
    return SimpleNamespace(user_id=user_id, minutes_rounded=minutes)


class TestArithmetic:
    def test_round_half_up(self):
        assert round_half_up(1, 2) == 1
        assert round_half_up(3, 2) == 2
        assert round_half_up(-1, 2) == -1
        assert round_half_up(10, 3) == 3

    def test_line_amounts(self):
        # 1h30 at 300 MAD/h, VAT 20%
        assert compute_line_amounts(90, 30000, 20) == {
            "amount_ht_cents": 45000,
            "vat_cents": 9000,
            "amount_ttc_cents": 54000,
        }

    def test_line_amounts_without_vat(self):
        amounts = compute_line_amounts(15, 25000, 0)
        assert amounts["vat_cents"] == 0
        assert amounts["amount_ttc_cents"] == amounts["amount_ht_cents"] == 6250

    def test_format_cents(self):
        assert format_cents(123456) == "1234,56 MAD"

    def test_rate_priority(self):
        settings = SimpleNamespace(rate_cabinet_cents=30000)
        user = SimpleNamespace(rate_cents=20000)
        assert effective_rate_cents(SimpleNamespace(rate_cents=50000), user, settings) == 50000
        assert effective_rate_cents(SimpleNamespace(rate_cents=None), user, settings) == 20000
        assert effective_rate_cents(SimpleNamespace(rate_cents=0), SimpleNamespace(rate_cents=None), settings) == 30000
        assert effective_rate_cents(None, None, None) == 0


class TestInvoiceLines:
    def setup_method(self):
        self.matter = SimpleNamespace(rate_cents=None, vat_rate=20, label="Bail")
        self.users = {
            "u1": SimpleNamespace(name="Alice", rate_cents=20000),
            "u2": SimpleNamespace(name="Brahim", rate_cents=30000),
        }
        self.settings = SimpleNamespace(rate_cabinet_cents=10000)

    def test_single_line_weighted_rate(self):
        entries = [_entry("u1", 60), _entry("u2", 30)]
        lines = build_invoice_lines(entries, self.matter, self.users, self.settings, GroupingMode.SINGLE)

        assert len(lines) == 1
        assert lines[0].label == "Prestations juridiques"
        assert lines[0].minutes == 90
        assert lines[0].rate_cents == 23333
        assert lines[0].amount_ht_cents == 35000
        assert lines[0].vat_cents == 7000

    def test_by_collaborator_lines(self):
        entries = [_entry("u2", 30), _entry("u1", 60), _entry("u2", 15)]
        lines = build_invoice_lines(entries, self.matter, self.users, self.settings, GroupingMode.BY_COLLABORATOR)

        assert [line.label for line in lines] == ["Prestations - Brahim", "Prestations - Alice"]
        assert lines[0].minutes == 45
        assert lines[0].amount_ht_cents == 22500
        assert lines[1].user_id == "u1"

    def test_expense_lines_have_no_vat(self):
        expenses = [SimpleNamespace(id="e1", nature="Timbre", amount_ttc_cents=1200)]
        line = expense_lines(expenses)[0]
        assert line.is_expense
        assert line.vat_cents == 0
        assert line.amount_ht_cents == line.amount_ttc_cents == 1200

    def test_totals_accept_dicts(self):
        lines = [
            {"amount_ht_cents": 100, "vat_cents": 20, "amount_ttc_cents": 120},
            {"amount_ht_cents": 50, "vat_cents": 0, "amount_ttc_cents": 50},
        ]
        assert invoice_totals(lines) == {"total_ht_cents": 150, "total_vat_cents": 20, "total_ttc_cents": 170}


class TestNumbering:
    def test_invoice_sequence_restarts_each_year(self):
        settings = SimpleNamespace(invoice_seq_year=2025, invoice_seq_next=42)
        assert next_sequence_number(settings, "invoice", date(2026, 1, 2)) == "2026-0001"
        assert next_sequence_number(settings, "invoice", date(2026, 1, 3)) == "2026-0002"
        assert settings.invoice_seq_next == 3

    def test_credit_sequence(self):
        settings = SimpleNamespace(credit_seq_year=2026, credit_seq_next=7)
        assert next_sequence_number(settings, "credit", date(2026, 5, 1)) == "AV-2026-0007"

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            next_sequence_number(SimpleNamespace(), "quote")


class TestCreditNoteAmounts:
    def setup_method(self):
        self.invoice = SimpleNamespace(total_ht_cents=10000, total_vat_cents=2000, total_ttc_cents=12000)

    def test_full_credit(self):
        assert compute_credit_note_amounts(self.invoice)["total_ttc_cents"] == 12000

    def test_partial_credit_is_prorated(self):
        assert compute_credit_note_amounts(self.invoice, 6000) == {
            "total_ht_cents": 5000,
            "total_vat_cents": 1000,
            "total_ttc_cents": 6000,
        }

    @pytest.mark.parametrize("amount", [0, -1, 12001])
    def test_partial_credit_bounds(self, amount):
        with pytest.raises(ValidationError):
            compute_credit_note_amounts(self.invoice, amount)


# =============================================================================
# Lifecycle (database)
# =============================================================================

def _log_time(db, seed, user_id, on_date, minutes, billable=True):
    from flowassist.db.models import TimesheetEntry

    entry = TimesheetEntry(tenant_id=seed["tenant_id"], user_id=user_id, matter_id=seed["matter_id"],
                           date=on_date, minutes_rounded=minutes, billable=billable, description="Travail")
    db.add(entry)
    db.flush()
    return entry


def test_issue_locks_entries_and_numbers_invoice(seed):
    from flowassist.billing import create_draft_invoice, issue_invoice
    from flowassist.db.models import AuditLog, InvoiceStatus, TimesheetEntry
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        _log_time(db, seed, seed["collab_id"], date(2026, 3, 2), 60)
        _log_time(db, seed, seed["owner_id"], date(2026, 3, 3), 30)
        _log_time(db, seed, seed["owner_id"], date(2026, 3, 4), 45, billable=False)

        invoice = create_draft_invoice(db, seed["tenant_id"], seed["owner_id"], seed["matter_id"],
                                       date(2026, 3, 1), date(2026, 3, 31))
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.number is None
        # 60 min at 200 + 30 min at the 300 cabinet rate -> weighted 233,33/h over 1h30
        assert invoice.total_ht_cents == 35000
        assert invoice.total_ttc_cents == 42000

        issue_invoice(db, seed["tenant_id"], seed["owner_id"], invoice.id, today=date(2026, 4, 1))
        assert invoice.number == "2026-0001"
        assert invoice.issue_date == date(2026, 4, 1)

        locked = db.query(TimesheetEntry).filter(TimesheetEntry.invoice_id == invoice.id).all()
        assert len(locked) == 2
        assert all(e.locked for e in locked)

        audit = db.query(AuditLog).filter(AuditLog.action == "issue_invoice").one()
        assert audit.details["invoice_number"] == "2026-0001"


def test_nothing_to_invoice(seed):
    from flowassist.billing import create_draft_invoice
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        with pytest.raises(ValidationError):
            create_draft_invoice(db, seed["tenant_id"], seed["owner_id"], seed["matter_id"],
                                 date(2026, 3, 1), date(2026, 3, 31))


def test_zero_rate_time_is_not_invoiced(seed):
    from flowassist.billing import create_draft_invoice
    from flowassist.db.models import User
    from flowassist.db.session import get_db_session
    from flowassist.tenants import ensure_cabinet_settings

    with get_db_session() as db:
        ensure_cabinet_settings(db, seed["tenant_id"]).rate_cabinet_cents = 0
        db.query(User).filter(User.id == seed["owner_id"]).first().rate_cents = None
        _log_time(db, seed, seed["owner_id"], date(2026, 3, 2), 60)

        with pytest.raises(ValidationError, match="zero"):
            create_draft_invoice(db, seed["tenant_id"], seed["owner_id"], seed["matter_id"],
                                 date(2026, 3, 1), date(2026, 3, 31))


def test_period_must_be_ordered(seed):
    from flowassist.billing import create_draft_invoice
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        with pytest.raises(ValidationError):
            create_draft_invoice(db, seed["tenant_id"], seed["owner_id"], seed["matter_id"],
                                 date(2026, 3, 31), date(2026, 3, 1))


def test_flat_fee_invoice_includes_expenses(seed):
    from flowassist.billing import create_draft_invoice, issue_invoice
    from flowassist.db.models import Expense
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        expense = Expense(tenant_id=seed["tenant_id"], user_id=seed["owner_id"], client_id=seed["client_id"],
                          matter_id=seed["flat_matter_id"], expense_date=date(2026, 3, 5),
                          nature="Greffe", amount_ttc_cents=15000)
        db.add(expense)
        db.flush()

        invoice = create_draft_invoice(db, seed["tenant_id"], seed["owner_id"], seed["flat_matter_id"],
                                       date(2026, 3, 1), date(2026, 3, 31))
        assert [line["label"] for line in invoice.lines] == ["Forfait - Statuts", "Frais - Greffe"]
        assert invoice.total_ht_cents == 515000
        assert invoice.total_vat_cents == 100000
        assert invoice.total_ttc_cents == 615000

        issue_invoice(db, seed["tenant_id"], seed["owner_id"], invoice.id, today=date(2026, 4, 1))
        assert expense.locked
        assert expense.invoice_id == invoice.id


def test_credit_notes(seed):
    from flowassist.billing import create_credit_note, create_draft_invoice, delete_draft_invoice, issue_invoice
    from flowassist.db.models import InvoiceStatus
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        _log_time(db, seed, seed["collab_id"], date(2026, 3, 2), 120)
        invoice = create_draft_invoice(db, seed["tenant_id"], seed["owner_id"], seed["matter_id"],
                                       date(2026, 3, 1), date(2026, 3, 31))

        with pytest.raises(ConflictError):
            create_credit_note(db, seed["tenant_id"], seed["owner_id"], invoice.id)

        issue_invoice(db, seed["tenant_id"], seed["owner_id"], invoice.id, today=date(2026, 4, 1))
        with pytest.raises(ConflictError):
            delete_draft_invoice(db, seed["tenant_id"], invoice.id)

        partial = create_credit_note(db, seed["tenant_id"], seed["owner_id"], invoice.id,
                                     reason="Geste commercial", amount_ttc_cents=1200, today=date(2026, 4, 2))
        assert partial.number == "AV-2026-0001"
        assert invoice.status == InvoiceStatus.ISSUED

        full = create_credit_note(db, seed["tenant_id"], seed["owner_id"], invoice.id, today=date(2026, 4, 3))
        assert full.number == "AV-2026-0002"
        assert full.total_ttc_cents == invoice.total_ttc_cents
        assert invoice.status == InvoiceStatus.CANCELLED


def test_mark_paid_requires_issued(seed):
    from flowassist.billing import create_draft_invoice, issue_invoice, set_invoice_paid
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        _log_time(db, seed, seed["collab_id"], date(2026, 3, 2), 60)
        invoice = create_draft_invoice(db, seed["tenant_id"], seed["owner_id"], seed["matter_id"],
                                       date(2026, 3, 1), date(2026, 3, 31))
        with pytest.raises(ConflictError):
            set_invoice_paid(db, seed["tenant_id"], seed["owner_id"], invoice.id, True)

        issue_invoice(db, seed["tenant_id"], seed["owner_id"], invoice.id, today=date(2026, 4, 1))
        set_invoice_paid(db, seed["tenant_id"], seed["owner_id"], invoice.id, True, date(2026, 4, 20))
        assert invoice.paid
        assert invoice.payment_date == date(2026, 4, 20)

        set_invoice_paid(db, seed["tenant_id"], seed["owner_id"], invoice.id, False)
        assert invoice.payment_date is None


def test_cabinet_settings_validation(seed):
    from flowassist.billing import update_cabinet_settings
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        with pytest.raises(ValidationError):
            update_cabinet_settings(db, seed["tenant_id"], seed["owner_id"], vat_default=14)
        with pytest.raises(ValidationError):
            update_cabinet_settings(db, seed["tenant_id"], seed["owner_id"], rate_cabinet_cents=-1)

        settings = update_cabinet_settings(db, seed["tenant_id"], seed["owner_id"],
                                           iban="MA64 0000", vat_default=0, name=None)
        assert settings.iban == "MA64 0000"
        assert settings.vat_default == 0
        assert settings.name == "Cabinet Alpha"
