"""
Reports API Endpoints
=====================

Dashboard KPIs and CSV exports. Rows are loaded once per request for the
current tenant and handed to the pure functions in `analytics` and
`exports`.
"""

import logging
from datetime import date
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException, Depends, Query, Response

from .auth import AuthContext, Permission
from . import analytics
from . import exports
from .db.models import Client, CreditNote, Invoice, Matter, TenantMember, TimesheetEntry, User
from .db.session import get_db_session
from .deps import require_permission
from .errors import BusinessRuleError
from .tenants import ensure_cabinet_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["reports"])

CSV_MEDIA_TYPE = "text/csv; charset=utf-8"


# =============================================================================
# LOADERS
# =============================================================================

def _lookups(db, tenant_id: str) -> Dict[str, Dict]:
    users = {
        u.id: u for u in db.query(User)
        .join(TenantMember, TenantMember.user_id == User.id)
        .filter(TenantMember.tenant_id == tenant_id)
        .all()
    }
    matters = {m.id: m for m in db.query(Matter).filter(Matter.tenant_id == tenant_id).all()}
    clients = {c.id: c for c in db.query(Client).filter(Client.tenant_id == tenant_id).all()}

    # time can outlive a membership
    missing = {e.user_id for e in db.query(TimesheetEntry.user_id).filter(TimesheetEntry.tenant_id == tenant_id)
               .distinct()} - set(users)
    if missing:
        users.update({u.id: u for u in db.query(User).filter(User.id.in_(missing)).all()})
    return {"users": users, "matters": matters, "clients": clients}


def _entries(db, tenant_id: str, date_from: Optional[date], date_to: Optional[date],
             user_id: Optional[str] = None, matter_id: Optional[str] = None) -> List[TimesheetEntry]:
    query = db.query(TimesheetEntry).filter(TimesheetEntry.tenant_id == tenant_id)
    if date_from:
        query = query.filter(TimesheetEntry.date >= date_from)
    if date_to:
        query = query.filter(TimesheetEntry.date <= date_to)
    if user_id:
        query = query.filter(TimesheetEntry.user_id == user_id)
    if matter_id:
        query = query.filter(TimesheetEntry.matter_id == matter_id)
    return query.order_by(TimesheetEntry.date.asc()).all()


def _invoices(db, tenant_id: str) -> List[Invoice]:
    return db.query(Invoice).filter(Invoice.tenant_id == tenant_id).order_by(Invoice.created_at.desc()).all()


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=exports.csv_bytes(content),
        media_type=CSV_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _invoice_summary(inv: Invoice, matters: Dict, clients: Dict) -> Dict:
    matter = matters.get(inv.matter_id)
    client = clients.get(matter.client_id) if matter else None
    return {
        "id": inv.id,
        "number": inv.number,
        "issue_date": inv.issue_date.isoformat() if inv.issue_date else None,
        "matter_code": matter.code if matter else "-",
        "client_name": client.name if client else "-",
        "total_ttc_cents": inv.total_ttc_cents,
        "days_outstanding": (date.today() - inv.issue_date).days if inv.issue_date else None,
    }


# =============================================================================
# KPI
# =============================================================================

@router.get("/kpi/summary")
async def kpi_summary(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    auth: AuthContext = Depends(require_permission(Permission.KPI_READ))
):
    with get_db_session() as db:
        entries = _entries(db, auth.tenant_id, date_from, date_to)
        return analytics.kpi_summary(entries, date_from, date_to)


@router.get("/kpi/by-user")
async def kpi_by_user(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    auth: AuthContext = Depends(require_permission(Permission.KPI_READ))
):
    with get_db_session() as db:
        lookups = _lookups(db, auth.tenant_id)
        return analytics.kpi_by_user(_entries(db, auth.tenant_id, date_from, date_to), lookups["users"])


@router.get("/kpi/by-matter")
async def kpi_by_matter(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    auth: AuthContext = Depends(require_permission(Permission.KPI_READ))
):
    with get_db_session() as db:
        lookups = _lookups(db, auth.tenant_id)
        return analytics.kpi_by_matter(
            _entries(db, auth.tenant_id, date_from, date_to), lookups["matters"], lookups["clients"]
        )


@router.get("/kpi/revenue")
async def kpi_revenue(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    group_by: List[str] = Query([analytics.GROUP_COLLABORATOR]),
    auth: AuthContext = Depends(require_permission(Permission.KPI_READ))
):
    """
    Billable vs. invoiced revenue, grouped by any of collaborator, client, matter.
    """
    try:
        with get_db_session() as db:
            lookups = _lookups(db, auth.tenant_id)
            invoices = _invoices(db, auth.tenant_id)
            invoice_entries = db.query(TimesheetEntry).filter(
                TimesheetEntry.tenant_id == auth.tenant_id,
                TimesheetEntry.invoice_id != None,
            ).all()
            rows = analytics.kpi_revenue(
                _entries(db, auth.tenant_id, date_from, date_to),
                invoices,
                invoice_entries,
                lookups["users"], lookups["matters"], lookups["clients"],
                ensure_cabinet_settings(db, auth.tenant_id),
                group_by, date_from, date_to,
            )
        return {
            "rows": rows,
            "total_billable_revenue_cents": sum(r["billable_revenue_cents"] for r in rows),
            "total_invoiced_revenue_cents": sum(r["invoiced_revenue_cents"] for r in rows),
        }
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to compute revenue KPI")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/kpi/flat-fees")
async def kpi_flat_fees(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    auth: AuthContext = Depends(require_permission(Permission.KPI_READ))
):
    with get_db_session() as db:
        lookups = _lookups(db, auth.tenant_id)
        return analytics.flat_fee_summary(
            lookups["matters"], lookups["clients"], _invoices(db, auth.tenant_id), date_from, date_to
        )


@router.get("/kpi/unpaid")
async def kpi_unpaid(auth: AuthContext = Depends(require_permission(Permission.KPI_READ))):
    with get_db_session() as db:
        lookups = _lookups(db, auth.tenant_id)
        result = analytics.unpaid_invoices(_invoices(db, auth.tenant_id))
        return {
            "count": result["count"],
            "total_ttc_cents": result["total_ttc_cents"],
            "invoices": [_invoice_summary(inv, lookups["matters"], lookups["clients"]) for inv in result["invoices"]],
        }


@router.get("/kpi/wip-aging")
async def kpi_wip_aging(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    group_by: List[str] = Query([analytics.GROUP_COLLABORATOR]),
    auth: AuthContext = Depends(require_permission(Permission.KPI_READ))
):
    """Unbilled billable time by age bucket."""
    with get_db_session() as db:
        lookups = _lookups(db, auth.tenant_id)
        rows = analytics.wip_aging(
            _entries(db, auth.tenant_id, date_from, date_to),
            lookups["users"], lookups["matters"], lookups["clients"], group_by,
        )
    return {"rows": rows, "totals": analytics.wip_totals(rows)}


# =============================================================================
# CSV EXPORTS
# =============================================================================

@router.get("/exports/timesheet")
async def export_timesheet(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    user_id: Optional[str] = Query(None),
    matter_id: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_permission(Permission.TIMESHEET_ALL))
):
    with get_db_session() as db:
        lookups = _lookups(db, auth.tenant_id)
        invoices = {inv.id: inv for inv in _invoices(db, auth.tenant_id)}
        content = exports.timesheet_csv(
            _entries(db, auth.tenant_id, date_from, date_to, user_id, matter_id),
            lookups["users"], lookups["matters"], lookups["clients"], invoices,
        )
    return _csv_response(content, exports.dated_filename("timesheet"))


@router.get("/exports/kpi-by-user")
async def export_kpi_by_user(
    date_from: date = Query(..., alias="from"),
    date_to: date = Query(..., alias="to"),
    auth: AuthContext = Depends(require_permission(Permission.KPI_READ))
):
    with get_db_session() as db:
        lookups = _lookups(db, auth.tenant_id)
        rows = analytics.kpi_by_user(_entries(db, auth.tenant_id, date_from, date_to), lookups["users"])
    return _csv_response(exports.kpi_by_user_csv(rows),
                         exports.period_filename("kpi_par_collaborateur", date_from, date_to))


@router.get("/exports/kpi-by-matter")
async def export_kpi_by_matter(
    date_from: date = Query(..., alias="from"),
    date_to: date = Query(..., alias="to"),
    auth: AuthContext = Depends(require_permission(Permission.KPI_READ))
):
    with get_db_session() as db:
        lookups = _lookups(db, auth.tenant_id)
        rows = analytics.kpi_by_matter(
            _entries(db, auth.tenant_id, date_from, date_to), lookups["matters"], lookups["clients"]
        )
    return _csv_response(exports.kpi_by_matter_csv(rows),
                         exports.period_filename("kpi_par_dossier", date_from, date_to))


@router.get("/exports/invoices")
async def export_invoices(auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))):
    with get_db_session() as db:
        lookups = _lookups(db, auth.tenant_id)
        content = exports.invoices_csv(_invoices(db, auth.tenant_id), lookups["matters"], lookups["clients"])
    return _csv_response(content, exports.dated_filename("factures"))


@router.get("/exports/credit-notes")
async def export_credit_notes(auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))):
    with get_db_session() as db:
        invoices = {inv.id: inv for inv in _invoices(db, auth.tenant_id)}
        notes = (
            db.query(CreditNote)
            .filter(CreditNote.tenant_id == auth.tenant_id)
            .order_by(CreditNote.issue_date.desc())
            .all()
        )
        content = exports.credit_notes_csv(notes, invoices)
    return _csv_response(content, exports.dated_filename("avoirs"))


@router.get("/exports/wip-aging")
async def export_wip_aging(
    date_from: date = Query(..., alias="from"),
    date_to: date = Query(..., alias="to"),
    group_by: List[str] = Query([analytics.GROUP_COLLABORATOR]),
    auth: AuthContext = Depends(require_permission(Permission.KPI_READ))
):
    with get_db_session() as db:
        lookups = _lookups(db, auth.tenant_id)
        grouping = analytics.normalize_grouping(group_by)
        rows = analytics.wip_aging(
            _entries(db, auth.tenant_id, date_from, date_to),
            lookups["users"], lookups["matters"], lookups["clients"], grouping,
        )
    return _csv_response(exports.wip_aging_csv(rows, grouping),
                         exports.period_filename("wip_aging", date_from, date_to))
