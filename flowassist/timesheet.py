"""
Timesheet
=========

Time entry rules:
- Durations are stored rounded up to the next 15 minutes (anything <= 0 becomes 15)
- Collaborators log their own time on open matters they are assigned to
- Locked (invoiced) entries are read-only

Also hosts the matter budget check used after each new entry.
"""

import logging
import math
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from .audit import record_audit
from .auth import AuthContext
from .billing import effective_rate_cents, open_matter_or_error, round_half_up
from .config import get_settings
from .db.models import (
    Assignment, AuditLog, BillingType, Matter, TenantRole, TimesheetEntry, User,
)
from .errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from .tenants import ensure_cabinet_settings, get_member, tenant_user_ids

logger = logging.getLogger(__name__)

ROUNDING_INCREMENT = 15


# =============================================================================
# MINUTES
# =============================================================================

def round_minutes(minutes: int) -> int:
    """Round up to the next multiple of 15; zero or negative input bills one increment."""
    if minutes <= 0:
        return ROUNDING_INCREMENT
    return math.ceil(minutes / ROUNDING_INCREMENT) * ROUNDING_INCREMENT


def format_minutes_to_hours(minutes: int) -> str:
    """45 -> "45 min", 120 -> "2 h", 135 -> "2 h 15"."""
    hours, mins = divmod(minutes, 60)
    if hours == 0:
        return f"{mins} min"
    if mins == 0:
        return f"{hours} h"
    return f"{hours} h {mins}"


def minutes_to_decimal_hours(minutes: int) -> str:
    return f"{minutes / 60:.2f}"


# =============================================================================
# ACCESS RULES
# =============================================================================

def is_assigned(db: Session, tenant_id: str, matter_id: str, user_id: str, on_date: date) -> bool:
    """True when an assignment of `user_id` on `matter_id` covers `on_date`."""
    assignments = db.query(Assignment).filter(
        Assignment.tenant_id == tenant_id,
        Assignment.matter_id == matter_id,
        Assignment.user_id == user_id,
        Assignment.start_date <= on_date,
    ).all()
    return any(a.end_date is None or on_date <= a.end_date for a in assignments)


def check_can_log(db: Session, auth: AuthContext, matter_id: str, user_id: str, on_date: date) -> Matter:
    matter = open_matter_or_error(db, auth.tenant_id, matter_id)

    if auth.can_manage:
        member = get_member(db, auth.tenant_id, user_id)
        if not member or member.role == TenantRole.CLIENT:
            raise ValidationError("User is not a member of this cabinet")
        return matter

    if user_id != auth.user_id:
        raise PermissionDeniedError("Collaborators can only log their own time")
    if not is_assigned(db, auth.tenant_id, matter_id, user_id, on_date):
        raise PermissionDeniedError("You are not assigned to this matter on this date")
    return matter


def get_entry(db: Session, auth: AuthContext, entry_id: str) -> TimesheetEntry:
    entry = db.query(TimesheetEntry).filter(
        TimesheetEntry.id == entry_id,
        TimesheetEntry.tenant_id == auth.tenant_id,
    ).first()
    if not entry or (not auth.can_manage and entry.user_id != auth.user_id):
        raise NotFoundError("Timesheet entry not found")
    return entry


# =============================================================================
# CRUD
# =============================================================================

def create_entry(db: Session, auth: AuthContext, matter_id: str, entry_date: date, minutes: int,
                 description: str = "", billable: bool = True, user_id: Optional[str] = None) -> TimesheetEntry:
    user_id = user_id or auth.user_id
    check_can_log(db, auth, matter_id, user_id, entry_date)

    entry = TimesheetEntry(
        tenant_id=auth.tenant_id,
        user_id=user_id,
        matter_id=matter_id,
        date=entry_date,
        minutes_rounded=round_minutes(minutes),
        description=description or "",
        billable=billable,
    )
    db.add(entry)
    db.flush()
    return entry


def update_entry(db: Session, auth: AuthContext, entry_id: str, **changes) -> TimesheetEntry:
    entry = get_entry(db, auth, entry_id)
    if entry.locked:
        raise ConflictError("Entry is locked (already invoiced)")

    matter_id = changes.get("matter_id") or entry.matter_id
    entry_date = changes.get("date") or entry.date
    if matter_id != entry.matter_id or entry_date != entry.date:
        check_can_log(db, auth, matter_id, entry.user_id, entry_date)

    entry.matter_id = matter_id
    entry.date = entry_date
    if changes.get("minutes") is not None:
        entry.minutes_rounded = round_minutes(changes["minutes"])
    if changes.get("description") is not None:
        entry.description = changes["description"]
    if changes.get("billable") is not None:
        entry.billable = changes["billable"]
    db.flush()
    return entry


def delete_entry(db: Session, auth: AuthContext, entry_id: str) -> None:
    entry = get_entry(db, auth, entry_id)
    if entry.locked:
        raise ConflictError("Entry is locked (already invoiced)")
    db.delete(entry)
    db.flush()


def lock_entries(db: Session, auth: AuthContext, entry_ids: List[str]) -> int:
    entries = db.query(TimesheetEntry).filter(
        TimesheetEntry.tenant_id == auth.tenant_id,
        TimesheetEntry.id.in_(entry_ids),
        TimesheetEntry.locked == False,
    ).all()
    for entry in entries:
        entry.locked = True
    record_audit(db, auth.tenant_id, auth.user_id, "lock_entries", "timesheet_entry", None,
                 {"count": len(entries)})
    db.flush()
    return len(entries)


def list_entries(db: Session, auth: AuthContext, user_id: Optional[str] = None, matter_id: Optional[str] = None,
                 date_from: Optional[date] = None, date_to: Optional[date] = None) -> List[TimesheetEntry]:
    query = db.query(TimesheetEntry).filter(TimesheetEntry.tenant_id == auth.tenant_id)
    if not auth.can_manage:
        query = query.filter(TimesheetEntry.user_id == auth.user_id)
    elif user_id:
        query = query.filter(TimesheetEntry.user_id == user_id)
    if matter_id:
        query = query.filter(TimesheetEntry.matter_id == matter_id)
    if date_from:
        query = query.filter(TimesheetEntry.date >= date_from)
    if date_to:
        query = query.filter(TimesheetEntry.date <= date_to)
    return query.order_by(TimesheetEntry.date.desc(), TimesheetEntry.created_at.desc()).all()


# =============================================================================
# BUDGET
# =============================================================================

def matter_consumed_cents(db: Session, matter: Matter) -> int:
    """Billable time on the matter valued at each collaborator's effective rate."""
    settings = ensure_cabinet_settings(db, matter.tenant_id)
    entries = db.query(TimesheetEntry).filter(
        TimesheetEntry.tenant_id == matter.tenant_id,
        TimesheetEntry.matter_id == matter.id,
        TimesheetEntry.billable == True,
    ).all()
    users: Dict[str, User] = {
        u.id: u for u in db.query(User).filter(User.id.in_({e.user_id for e in entries})).all()
    } if entries else {}
    return sum(
        round_half_up(e.minutes_rounded * effective_rate_cents(matter, users.get(e.user_id), settings), 60)
        for e in entries
    )


def budget_status(db: Session, matter: Matter) -> Optional[Dict[str, int]]:
    """Consumption of a capped time-based matter, or None when the matter has no budget."""
    if matter.billing_type != BillingType.TIME_BASED or not matter.max_amount_ht_cents:
        return None
    consumed = matter_consumed_cents(db, matter)
    return {
        "max_amount_ht_cents": matter.max_amount_ht_cents,
        "consumed_ht_cents": consumed,
        "percent": int(consumed * 100 // matter.max_amount_ht_cents),
    }


def check_budget_alert(db: Session, tenant_id: str, matter_id: str) -> bool:
    """
    Email owners once a matter crosses the alert threshold of its budget.

    The alert is recorded in the audit log so it fires once per budget value.
    Returns True when an alert was sent.
    """
    from .email_utils import send_budget_alert_email

    matter = db.query(Matter).filter(Matter.id == matter_id, Matter.tenant_id == tenant_id).first()
    if not matter:
        return False

    status = budget_status(db, matter)
    threshold = get_settings().budget_alert_threshold_pct
    if not status or status["percent"] < threshold:
        return False

    previous = db.query(AuditLog).filter(
        AuditLog.tenant_id == tenant_id,
        AuditLog.action == "budget_alert",
        AuditLog.entity_id == matter.id,
    ).all()
    if any((p.details or {}).get("max_amount_ht_cents") == matter.max_amount_ht_cents for p in previous):
        return False

    owner_ids = tenant_user_ids(db, tenant_id, [TenantRole.OWNER])
    owners = db.query(User).filter(User.id.in_(owner_ids), User.active == True).all() if owner_ids else []
    for owner in owners:
        send_budget_alert_email(
            to_email=owner.email,
            matter_code=matter.code,
            matter_label=matter.label,
            consumed_cents=status["consumed_ht_cents"],
            max_cents=status["max_amount_ht_cents"],
            percent=status["percent"],
        )

    record_audit(db, tenant_id, None, "budget_alert", "matter", matter.id, {
        "max_amount_ht_cents": matter.max_amount_ht_cents,
        "consumed_ht_cents": status["consumed_ht_cents"],
        "percent": status["percent"],
        "notified": len(owners),
    })
    db.flush()
    logger.info(f"Budget alert for matter {matter.code}: {status['percent']}% consumed")
    return True
