"""
CSV Export Tests
"""

from datetime import date
from types import SimpleNamespace

from flowassist.db.models import InvoiceStatus
from flowassist.exports import (
    BOM,
    credit_notes_csv,
    csv_bytes,
    dated_filename,
    escape_csv,
    invoices_csv,
    period_filename,
    timesheet_csv,
    to_csv,
    wip_aging_csv,
)


def _lookups():
    users = {"u1": SimpleNamespace(email="a@cab.ma", name="Alice")}
    clients = {"c1": SimpleNamespace(code="CL0001", name="Atlas, SARL")}
    matters = {"m1": SimpleNamespace(code="DOS0001", label="Bail", client_id="c1")}
    return users, matters, clients


def test_escape_csv():
    assert escape_csv(None) == ""
    assert escape_csv(12) == "12"
    assert escape_csv("a,b") == '"a,b"'
    assert escape_csv('dit "oui"') == '"dit ""oui"""'
    assert escape_csv("ligne\nsuivante") == '"ligne\nsuivante"'


def test_semicolon_separator_and_bom():
    content = to_csv(["A", "B"], [[1, "x"], [2, None]])
    assert content == "A;B\n1;x\n2;"
    assert csv_bytes(content).startswith(BOM.encode("utf-8"))


def test_filenames():
    assert dated_filename("timesheet", date(2026, 1, 31)) == "timesheet_2026-01-31.csv"
    assert period_filename("wip_aging", date(2026, 1, 1), date(2026, 3, 31)) == "wip_aging_2026-01-01_2026-03-31.csv"


def test_timesheet_csv_row():
    users, matters, clients = _lookups()
    entries = [SimpleNamespace(
        date=date(2026, 3, 2), user_id="u1", matter_id="m1", minutes_rounded=90, billable=True,
        description="Audience", locked=True, invoice_id="i1",
    )]
    invoices = {"i1": SimpleNamespace(number="2026-0003")}

    lines = timesheet_csv(entries, users, matters, clients, invoices).split("\n")
    assert len(lines) == 2
    assert lines[1] == "2026-03-02;a@cab.ma;DOS0001;Bail;CL0001;90;1.50;Oui;Audience;Oui;2026-0003"


def test_invoices_csv_draft_and_status_label():
    _, matters, clients = _lookups()
    draft = SimpleNamespace(
        number=None, issue_date=None, matter_id="m1", period_from=date(2026, 3, 1), period_to=date(2026, 3, 31),
        total_ht_cents=10000, total_vat_cents=2000, total_ttc_cents=12000, status=InvoiceStatus.DRAFT,
    )
    row = invoices_csv([draft], matters, clients).split("\n")[1].split(";")
    assert row[0] == "Brouillon"
    assert row[1] == ""
    assert row[4] == '"Atlas, SARL"'
    assert row[7:10] == ["100.00", "20.00", "120.00"]


def test_credit_notes_csv():
    notes = [SimpleNamespace(number="AV-2026-0001", issue_date=date(2026, 4, 2), invoice_id="i1",
                             total_ht_cents=5000, total_vat_cents=1000, total_ttc_cents=6000, reason=None)]
    row = credit_notes_csv(notes, {"i1": SimpleNamespace(number="2026-0001")}).split("\n")[1]
    assert row == "AV-2026-0001;2026-04-02;2026-0001;50.00;10.00;60.00;"


def test_wip_aging_csv_columns_follow_grouping():
    rows = [{
        "client_code": "CL0001", "client_name": "Atlas", "matter_code": "DOS0001", "matter_label": "Bail",
        "billable_minutes": 120,
        "aging": {"under_30": 60, "d30_60": 0, "d60_90": 60, "d90_120": 0, "over_120": 0},
    }]
    lines = wip_aging_csv(rows, ["client", "matter"]).split("\n")
    assert lines[0].split(";")[:4] == ["Code Client", "Client", "Code", "Dossier"]
    assert lines[1] == "CL0001;Atlas;DOS0001;Bail;120;2.00;1.00;0.00;1.00;0.00;0.00"
