"""
Timesheet & Expenses API Endpoints
==================================

FastAPI router for time entries and re-billable expenses.
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field

from .auth import AuthContext, Permission
from .db.session import get_db_session
from .deps import require_permission
from .errors import BusinessRuleError
from . import expenses as expense_service
from . import timesheet as timesheet_service
from .jobs.queue import enqueue_job
from .jobs.tasks import task_budget_alert

logger = logging.getLogger(__name__)

router = APIRouter(tags=["timesheet"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class EntryCreate(BaseModel):
    """Create time entry request (minutes are rounded up to 15)"""
    matter_id: str
    entry_date: date
    minutes: int
    description: str = ""
    billable: bool = True
    user_id: Optional[str] = None


class EntryUpdate(BaseModel):
    matter_id: Optional[str] = None
    entry_date: Optional[date] = None
    minutes: Optional[int] = None
    description: Optional[str] = None
    billable: Optional[bool] = None


class EntryResponse(BaseModel):
    id: str
    user_id: str
    matter_id: str
    entry_date: date
    minutes_rounded: int
    hours_label: str
    description: str
    billable: bool
    locked: bool
    invoice_id: Optional[str]
    created_at: datetime


class LockRequest(BaseModel):
    entry_ids: List[str] = Field(..., min_length=1)


class ExpenseCreate(BaseModel):
    client_id: str
    matter_id: str
    expense_date: date
    nature: str = Field(..., min_length=1, max_length=255)
    amount_ttc_cents: int
    billable: bool = True
    user_id: Optional[str] = None


class ExpenseUpdate(BaseModel):
    client_id: Optional[str] = None
    matter_id: Optional[str] = None
    expense_date: Optional[date] = None
    nature: Optional[str] = Field(None, min_length=1, max_length=255)
    amount_ttc_cents: Optional[int] = None
    billable: Optional[bool] = None


class ExpenseResponse(BaseModel):
    id: str
    user_id: str
    client_id: str
    matter_id: str
    expense_date: date
    nature: str
    amount_ttc_cents: int
    billable: bool
    locked: bool
    invoice_id: Optional[str]
    created_at: datetime


def _entry_out(entry) -> EntryResponse:
    return EntryResponse(
        id=entry.id,
        user_id=entry.user_id,
        matter_id=entry.matter_id,
        entry_date=entry.date,
        minutes_rounded=entry.minutes_rounded,
        hours_label=timesheet_service.format_minutes_to_hours(entry.minutes_rounded),
        description=entry.description or "",
        billable=entry.billable,
        locked=entry.locked,
        invoice_id=entry.invoice_id,
        created_at=entry.created_at,
    )


def _expense_out(expense) -> ExpenseResponse:
    return ExpenseResponse(
        id=expense.id,
        user_id=expense.user_id,
        client_id=expense.client_id,
        matter_id=expense.matter_id,
        expense_date=expense.expense_date,
        nature=expense.nature,
        amount_ttc_cents=expense.amount_ttc_cents,
        billable=expense.billable,
        locked=expense.locked,
        invoice_id=expense.invoice_id,
        created_at=expense.created_at,
    )


# =============================================================================
# TIMESHEET
# =============================================================================

@router.get("/timesheet", response_model=List[EntryResponse])
async def list_entries(
    user_id: Optional[str] = Query(None),
    matter_id: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    auth: AuthContext = Depends(require_permission(Permission.TIMESHEET_OWN))
):
    """
    List time entries. Collaborators only ever see their own.
    """
    try:
        with get_db_session() as db:
            entries = timesheet_service.list_entries(db, auth, user_id, matter_id, date_from, date_to)
            return [_entry_out(e) for e in entries]
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to list timesheet entries")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/timesheet", response_model=EntryResponse)
async def create_entry(
    body: EntryCreate,
    auth: AuthContext = Depends(require_permission(Permission.TIMESHEET_OWN))
):
    try:
        with get_db_session() as db:
            entry = timesheet_service.create_entry(
                db, auth,
                matter_id=body.matter_id,
                entry_date=body.entry_date,
                minutes=body.minutes,
                description=body.description,
                billable=body.billable,
                user_id=body.user_id,
            )
            response = _entry_out(entry)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to create timesheet entry")
        raise HTTPException(status_code=500, detail=str(e))

    if response.billable:
        enqueue_job(task_budget_alert, auth.tenant_id, response.matter_id, retry=1)
    return response


@router.patch("/timesheet/{entry_id}", response_model=EntryResponse)
async def update_entry(
    entry_id: str,
    body: EntryUpdate,
    auth: AuthContext = Depends(require_permission(Permission.TIMESHEET_OWN))
):
    try:
        with get_db_session() as db:
            changes = body.model_dump(exclude_unset=True)
            if "entry_date" in changes:
                changes["date"] = changes.pop("entry_date")
            entry = timesheet_service.update_entry(db, auth, entry_id, **changes)
            return _entry_out(entry)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to update timesheet entry")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/timesheet/{entry_id}")
async def delete_entry(
    entry_id: str,
    auth: AuthContext = Depends(require_permission(Permission.TIMESHEET_OWN))
):
    with get_db_session() as db:
        timesheet_service.delete_entry(db, auth, entry_id)
    return {"message": "Entry deleted", "id": entry_id}


@router.post("/timesheet/lock")
async def lock_entries(
    body: LockRequest,
    auth: AuthContext = Depends(require_permission(Permission.TIMESHEET_ALL))
):
    """Lock entries so they can no longer be edited."""
    with get_db_session() as db:
        count = timesheet_service.lock_entries(db, auth, body.entry_ids)
    return {"locked": count}


# =============================================================================
# EXPENSES
# =============================================================================

@router.get("/expenses", response_model=List[ExpenseResponse])
async def list_expenses(
    user_id: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None),
    matter_id: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    auth: AuthContext = Depends(require_permission(Permission.EXPENSE_OWN))
):
    try:
        with get_db_session() as db:
            expenses = expense_service.list_expenses(db, auth, user_id, client_id, matter_id, date_from, date_to)
            return [_expense_out(e) for e in expenses]
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to list expenses")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/expenses", response_model=ExpenseResponse)
async def create_expense(
    body: ExpenseCreate,
    auth: AuthContext = Depends(require_permission(Permission.EXPENSE_OWN))
):
    try:
        with get_db_session() as db:
            expense = expense_service.create_expense(db, auth, **body.model_dump())
            return _expense_out(expense)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to create expense")
        raise HTTPException(status_code=500, detail=str(e))


@router.patch("/expenses/{expense_id}", response_model=ExpenseResponse)
async def update_expense(
    expense_id: str,
    body: ExpenseUpdate,
    auth: AuthContext = Depends(require_permission(Permission.EXPENSE_OWN))
):
    try:
        with get_db_session() as db:
            expense = expense_service.update_expense(db, auth, expense_id, **body.model_dump(exclude_unset=True))
            return _expense_out(expense)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to update expense")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/expenses/{expense_id}")
async def delete_expense(
    expense_id: str,
    auth: AuthContext = Depends(require_permission(Permission.EXPENSE_OWN))
):
    with get_db_session() as db:
        expense_service.delete_expense(db, auth, expense_id)
    return {"message": "Expense deleted", "id": expense_id}
