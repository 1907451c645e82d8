"""
Purchase ledger (supplier invoices).
"""

from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from .audit import record_audit
from .auth import AuthContext
from .db.models import PaymentMode, Purchase
from .errors import NotFoundError, ValidationError

PURCHASE_FIELDS = (
    "supplier", "invoice_number", "designation", "amount_ht_cents", "amount_tva_cents", "amount_ttc_cents",
    "num_if", "ice", "rate", "prorata", "payment_mode", "payment_date", "invoice_date",
)


def _normalize_amounts(data: dict) -> dict:
    """Fill TTC from HT + VAT when omitted, and validate the payment mode."""
    if data.get("amount_ttc_cents") is None:
        if data.get("amount_ht_cents") is None or data.get("amount_tva_cents") is None:
            raise ValidationError("amount_ttc_cents is required when HT or VAT is missing")
        data["amount_ttc_cents"] = data["amount_ht_cents"] + data["amount_tva_cents"]

    for key in ("amount_ht_cents", "amount_tva_cents", "amount_ttc_cents"):
        if data.get(key) is not None and data[key] < 0:
            raise ValidationError(f"{key} must not be negative")

    mode = data.get("payment_mode")
    if mode is not None:
        try:
            data["payment_mode"] = PaymentMode(int(mode)).value
        except ValueError:
            raise ValidationError("payment_mode must be between 1 and 7")
    return data


def get_purchase(db: Session, auth: AuthContext, purchase_id: str) -> Purchase:
    purchase = db.query(Purchase).filter(Purchase.id == purchase_id, Purchase.tenant_id == auth.tenant_id).first()
    if not purchase:
        raise NotFoundError("Purchase not found")
    return purchase


def create_purchase(db: Session, auth: AuthContext, **fields) -> Purchase:
    data = _normalize_amounts({k: v for k, v in fields.items() if k in PURCHASE_FIELDS})
    if data.get("amount_ht_cents") is None or data.get("amount_tva_cents") is None:
        raise ValidationError("amount_ht_cents and amount_tva_cents are required")
    if data.get("payment_mode") is None:
        raise ValidationError("payment_mode is required")

    purchase = Purchase(tenant_id=auth.tenant_id, created_by=auth.user_id, **data)
    db.add(purchase)
    db.flush()
    record_audit(db, auth.tenant_id, auth.user_id, "create_purchase", "purchase", purchase.id,
                 {"supplier": purchase.supplier, "invoice_number": purchase.invoice_number})
    return purchase


def update_purchase(db: Session, auth: AuthContext, purchase_id: str, **changes) -> Purchase:
    purchase = get_purchase(db, auth, purchase_id)
    data = {k: getattr(purchase, k) for k in PURCHASE_FIELDS}
    data.update({k: v for k, v in changes.items() if k in PURCHASE_FIELDS and v is not None})
    if ("amount_ht_cents" in changes or "amount_tva_cents" in changes) and changes.get("amount_ttc_cents") is None:
        data["amount_ttc_cents"] = None
    for key, value in _normalize_amounts(data).items():
        setattr(purchase, key, value)
    db.flush()
    return purchase


def delete_purchase(db: Session, auth: AuthContext, purchase_id: str) -> None:
    purchase = get_purchase(db, auth, purchase_id)
    record_audit(db, auth.tenant_id, auth.user_id, "delete_purchase", "purchase", purchase.id)
    db.delete(purchase)
    db.flush()


def list_purchases(db: Session, auth: AuthContext, date_from: Optional[date] = None,
                   date_to: Optional[date] = None) -> List[Purchase]:
    query = db.query(Purchase).filter(Purchase.tenant_id == auth.tenant_id)
    if date_from:
        query = query.filter(Purchase.invoice_date >= date_from)
    if date_to:
        query = query.filter(Purchase.invoice_date <= date_to)
    return query.order_by(Purchase.invoice_date.desc()).all()
