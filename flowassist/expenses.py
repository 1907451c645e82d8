"""
Expenses re-billed to clients.

Same ownership and lock rules as timesheet entries.
"""

from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from .auth import AuthContext
from .db.models import Expense
from .errors import ConflictError, NotFoundError, ValidationError
from .timesheet import check_can_log


def get_expense(db: Session, auth: AuthContext, expense_id: str) -> Expense:
    expense = db.query(Expense).filter(Expense.id == expense_id, Expense.tenant_id == auth.tenant_id).first()
    if not expense or (not auth.can_manage and expense.user_id != auth.user_id):
        raise NotFoundError("Expense not found")
    return expense


def _check_matter_client(db: Session, auth: AuthContext, client_id: str, matter_id: str,
                         user_id: str, expense_date: date) -> None:
    matter = check_can_log(db, auth, matter_id, user_id, expense_date)
    if matter.client_id != client_id:
        raise ValidationError("Matter does not belong to this client")


def create_expense(db: Session, auth: AuthContext, client_id: str, matter_id: str, expense_date: date,
                   nature: str, amount_ttc_cents: int, billable: bool = True,
                   user_id: Optional[str] = None) -> Expense:
    if amount_ttc_cents <= 0:
        raise ValidationError("Amount must be positive")
    if not (nature or "").strip():
        raise ValidationError("Nature is required")

    user_id = user_id or auth.user_id
    _check_matter_client(db, auth, client_id, matter_id, user_id, expense_date)

    expense = Expense(
        tenant_id=auth.tenant_id,
        user_id=user_id,
        client_id=client_id,
        matter_id=matter_id,
        expense_date=expense_date,
        nature=nature.strip(),
        amount_ttc_cents=amount_ttc_cents,
        billable=billable,
    )
    db.add(expense)
    db.flush()
    return expense


def update_expense(db: Session, auth: AuthContext, expense_id: str, **changes) -> Expense:
    expense = get_expense(db, auth, expense_id)
    if expense.locked:
        raise ConflictError("Expense is locked (already invoiced)")

    client_id = changes.get("client_id") or expense.client_id
    matter_id = changes.get("matter_id") or expense.matter_id
    expense_date = changes.get("expense_date") or expense.expense_date
    if (client_id, matter_id, expense_date) != (expense.client_id, expense.matter_id, expense.expense_date):
        _check_matter_client(db, auth, client_id, matter_id, expense.user_id, expense_date)

    if changes.get("amount_ttc_cents") is not None and changes["amount_ttc_cents"] <= 0:
        raise ValidationError("Amount must be positive")

    expense.client_id = client_id
    expense.matter_id = matter_id
    expense.expense_date = expense_date
    for key in ("nature", "amount_ttc_cents", "billable"):
        if changes.get(key) is not None:
            setattr(expense, key, changes[key])
    db.flush()
    return expense


def delete_expense(db: Session, auth: AuthContext, expense_id: str) -> None:
    expense = get_expense(db, auth, expense_id)
    if expense.locked:
        raise ConflictError("Expense is locked (already invoiced)")
    db.delete(expense)
    db.flush()


def list_expenses(db: Session, auth: AuthContext, user_id: Optional[str] = None,
                  client_id: Optional[str] = None, matter_id: Optional[str] = None,
                  date_from: Optional[date] = None, date_to: Optional[date] = None) -> List[Expense]:
    query = db.query(Expense).filter(Expense.tenant_id == auth.tenant_id)
    if not auth.can_manage:
        query = query.filter(Expense.user_id == auth.user_id)
    elif user_id:
        query = query.filter(Expense.user_id == user_id)
    if client_id:
        query = query.filter(Expense.client_id == client_id)
    if matter_id:
        query = query.filter(Expense.matter_id == matter_id)
    if date_from:
        query = query.filter(Expense.expense_date >= date_from)
    if date_to:
        query = query.filter(Expense.expense_date <= date_to)
    return query.order_by(Expense.expense_date.desc()).all()
