"""
Billing API Endpoints
=====================

FastAPI router for invoices, credit notes, the purchase ledger and the
cabinet settings (identity, default rate, VAT).

Invoice lifecycle:
- POST   /invoices                 - Create a draft from a matter and period
- POST   /invoices/{id}/recompute  - Rebuild draft lines
- POST   /invoices/{id}/issue      - Number, lock the billed time
- POST   /invoices/{id}/paid       - Mark paid / unpaid
- DELETE /invoices/{id}            - Delete a draft
- GET    /invoices/{id}/docx|pdf   - Rendered invoice
- POST   /invoices/{id}/credit-notes - Total or partial credit note
"""

import io
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .auth import AuthContext, Permission
from .billing import (
    GroupingMode, create_credit_note, create_draft_invoice, delete_draft_invoice, get_invoice,
    issue_invoice, recompute_draft, set_invoice_paid, update_cabinet_settings,
)
from .db.models import Client, CreditNote, Invoice, InvoiceStatus, Matter
from .db.session import get_db_session
from .deps import require_permission
from .errors import BusinessRuleError
from .exporter import build_invoice_docx, build_invoice_pdf, invoice_filename
from . import purchases as purchase_service
from .tenants import ensure_cabinet_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class InvoiceCreate(BaseModel):
    """Create draft invoice request"""
    matter_id: str
    period_from: date
    period_to: date
    grouping: GroupingMode = GroupingMode.SINGLE
    include_expenses: bool = True


class InvoiceRecompute(BaseModel):
    grouping: GroupingMode = GroupingMode.SINGLE
    include_expenses: bool = True


class InvoicePaidUpdate(BaseModel):
    paid: bool
    payment_date: Optional[date] = None


class InvoiceResponse(BaseModel):
    id: str
    matter_id: str
    number: Optional[str]
    status: str
    period_from: date
    period_to: date
    issue_date: Optional[date]
    lines: List[Dict[str, Any]]
    total_ht_cents: int
    total_vat_cents: int
    total_ttc_cents: int
    paid: bool
    payment_date: Optional[date]
    created_at: datetime


class CreditNoteCreate(BaseModel):
    """Credit note request; omit the amount for a total credit"""
    reason: Optional[str] = None
    amount_ttc_cents: Optional[int] = None


class CreditNoteResponse(BaseModel):
    id: str
    invoice_id: str
    number: str
    issue_date: date
    reason: Optional[str]
    total_ht_cents: int
    total_vat_cents: int
    total_ttc_cents: int


class PurchaseCreate(BaseModel):
    supplier: str = Field(..., min_length=1, max_length=255)
    invoice_number: str = Field(..., min_length=1, max_length=100)
    designation: str = Field(..., min_length=1)
    amount_ht_cents: int
    amount_tva_cents: int
    amount_ttc_cents: Optional[int] = None
    num_if: Optional[str] = None
    ice: Optional[str] = None
    rate: Optional[int] = None
    prorata: Optional[int] = None
    payment_mode: int
    payment_date: Optional[date] = None
    invoice_date: date


class PurchaseUpdate(BaseModel):
    supplier: Optional[str] = Field(None, min_length=1, max_length=255)
    invoice_number: Optional[str] = Field(None, min_length=1, max_length=100)
    designation: Optional[str] = None
    amount_ht_cents: Optional[int] = None
    amount_tva_cents: Optional[int] = None
    amount_ttc_cents: Optional[int] = None
    num_if: Optional[str] = None
    ice: Optional[str] = None
    rate: Optional[int] = None
    prorata: Optional[int] = None
    payment_mode: Optional[int] = None
    payment_date: Optional[date] = None
    invoice_date: Optional[date] = None


class PurchaseResponse(BaseModel):
    id: str
    supplier: str
    invoice_number: str
    designation: str
    amount_ht_cents: int
    amount_tva_cents: int
    amount_ttc_cents: int
    num_if: Optional[str]
    ice: Optional[str]
    rate: Optional[int]
    prorata: Optional[int]
    payment_mode: int
    payment_date: Optional[date]
    invoice_date: date


class SettingsUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = None
    iban: Optional[str] = Field(None, max_length=64)
    mentions: Optional[str] = None
    rate_cabinet_cents: Optional[int] = None
    vat_default: Optional[int] = None


class SettingsResponse(BaseModel):
    name: str
    address: Optional[str]
    iban: Optional[str]
    mentions: Optional[str]
    rate_cabinet_cents: int
    vat_default: int


def _invoice_out(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.id,
        matter_id=invoice.matter_id,
        number=invoice.number,
        status=invoice.status.value,
        period_from=invoice.period_from,
        period_to=invoice.period_to,
        issue_date=invoice.issue_date,
        lines=list(invoice.lines or []),
        total_ht_cents=invoice.total_ht_cents,
        total_vat_cents=invoice.total_vat_cents,
        total_ttc_cents=invoice.total_ttc_cents,
        paid=invoice.paid,
        payment_date=invoice.payment_date,
        created_at=invoice.created_at,
    )


def _credit_note_out(note: CreditNote) -> CreditNoteResponse:
    return CreditNoteResponse(
        id=note.id,
        invoice_id=note.invoice_id,
        number=note.number,
        issue_date=note.issue_date,
        reason=note.reason,
        total_ht_cents=note.total_ht_cents,
        total_vat_cents=note.total_vat_cents,
        total_ttc_cents=note.total_ttc_cents,
    )


def _purchase_out(purchase) -> PurchaseResponse:
    return PurchaseResponse(**{field: getattr(purchase, field) for field in PurchaseResponse.model_fields})


def _settings_out(settings) -> SettingsResponse:
    return SettingsResponse(**{field: getattr(settings, field) for field in SettingsResponse.model_fields})


# =============================================================================
# INVOICES
# =============================================================================

@router.get("/invoices", response_model=List[InvoiceResponse])
async def list_invoices(
    matter_id: Optional[str] = Query(None),
    status: Optional[InvoiceStatus] = Query(None),
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    try:
        with get_db_session() as db:
            query = db.query(Invoice).filter(Invoice.tenant_id == auth.tenant_id)
            if matter_id:
                query = query.filter(Invoice.matter_id == matter_id)
            if status:
                query = query.filter(Invoice.status == status)
            return [_invoice_out(i) for i in query.order_by(Invoice.created_at.desc()).all()]
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to list invoices")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/invoices", response_model=InvoiceResponse)
async def create_invoice(
    body: InvoiceCreate,
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    """
    Create a draft invoice from the matter's billable time (and expenses) in the period.
    """
    try:
        with get_db_session() as db:
            invoice = create_draft_invoice(
                db, auth.tenant_id, auth.user_id, body.matter_id,
                body.period_from, body.period_to, body.grouping, body.include_expenses,
            )
            return _invoice_out(invoice)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to create invoice")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice_detail(
    invoice_id: str,
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    with get_db_session() as db:
        return _invoice_out(get_invoice(db, auth.tenant_id, invoice_id))


@router.post("/invoices/{invoice_id}/recompute", response_model=InvoiceResponse)
async def recompute_invoice(
    invoice_id: str,
    body: InvoiceRecompute,
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    with get_db_session() as db:
        invoice = recompute_draft(db, auth.tenant_id, invoice_id, body.grouping, body.include_expenses)
        return _invoice_out(invoice)


@router.post("/invoices/{invoice_id}/issue", response_model=InvoiceResponse)
async def issue(
    invoice_id: str,
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    try:
        with get_db_session() as db:
            return _invoice_out(issue_invoice(db, auth.tenant_id, auth.user_id, invoice_id))
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to issue invoice")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/invoices/{invoice_id}/paid", response_model=InvoiceResponse)
async def mark_paid(
    invoice_id: str,
    body: InvoicePaidUpdate,
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    with get_db_session() as db:
        invoice = set_invoice_paid(db, auth.tenant_id, auth.user_id, invoice_id, body.paid, body.payment_date)
        return _invoice_out(invoice)


@router.delete("/invoices/{invoice_id}")
async def delete_invoice(
    invoice_id: str,
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    with get_db_session() as db:
        delete_draft_invoice(db, auth.tenant_id, invoice_id)
    return {"message": "Draft invoice deleted", "id": invoice_id}


def _render_invoice(auth: AuthContext, invoice_id: str, extension: str):
    with get_db_session() as db:
        invoice = get_invoice(db, auth.tenant_id, invoice_id)
        matter = db.query(Matter).filter(Matter.id == invoice.matter_id).first()
        client = db.query(Client).filter(Client.id == matter.client_id).first() if matter else None
        settings = ensure_cabinet_settings(db, auth.tenant_id)

        if extension == "pdf":
            content, media_type = build_invoice_pdf(invoice, settings, client, matter), "application/pdf"
        else:
            content, media_type = build_invoice_docx(invoice, settings, client, matter), DOCX_MEDIA_TYPE
        filename = invoice_filename(invoice, extension, matter)

    return StreamingResponse(
        io.BytesIO(content),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.get("/invoices/{invoice_id}/docx")
async def download_invoice_docx(
    invoice_id: str,
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    try:
        return _render_invoice(auth, invoice_id, "docx")
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to render invoice docx")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/invoices/{invoice_id}/pdf")
async def download_invoice_pdf(
    invoice_id: str,
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    try:
        return _render_invoice(auth, invoice_id, "pdf")
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to render invoice pdf")
        raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# CREDIT NOTES
# =============================================================================

@router.post("/invoices/{invoice_id}/credit-notes", response_model=CreditNoteResponse)
async def create_invoice_credit_note(
    invoice_id: str,
    body: CreditNoteCreate,
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    try:
        with get_db_session() as db:
            note = create_credit_note(db, auth.tenant_id, auth.user_id, invoice_id,
                                      reason=body.reason, amount_ttc_cents=body.amount_ttc_cents)
            return _credit_note_out(note)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to create credit note")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/credit-notes", response_model=List[CreditNoteResponse])
async def list_credit_notes(
    invoice_id: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_permission(Permission.BILLING_MANAGE))
):
    with get_db_session() as db:
        query = db.query(CreditNote).filter(CreditNote.tenant_id == auth.tenant_id)
        if invoice_id:
            query = query.filter(CreditNote.invoice_id == invoice_id)
        return [_credit_note_out(n) for n in query.order_by(CreditNote.issue_date.desc()).all()]


# =============================================================================
# PURCHASES
# =============================================================================

@router.get("/purchases", response_model=List[PurchaseResponse])
async def list_purchases(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    auth: AuthContext = Depends(require_permission(Permission.PURCHASE_MANAGE))
):
    with get_db_session() as db:
        return [_purchase_out(p) for p in purchase_service.list_purchases(db, auth, date_from, date_to)]


@router.post("/purchases", response_model=PurchaseResponse)
async def create_purchase(
    body: PurchaseCreate,
    auth: AuthContext = Depends(require_permission(Permission.PURCHASE_MANAGE))
):
    try:
        with get_db_session() as db:
            return _purchase_out(purchase_service.create_purchase(db, auth, **body.model_dump()))
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to create purchase")
        raise HTTPException(status_code=500, detail=str(e))


@router.patch("/purchases/{purchase_id}", response_model=PurchaseResponse)
async def update_purchase(
    purchase_id: str,
    body: PurchaseUpdate,
    auth: AuthContext = Depends(require_permission(Permission.PURCHASE_MANAGE))
):
    with get_db_session() as db:
        purchase = purchase_service.update_purchase(db, auth, purchase_id, **body.model_dump(exclude_unset=True))
        return _purchase_out(purchase)


@router.delete("/purchases/{purchase_id}")
async def delete_purchase(
    purchase_id: str,
    auth: AuthContext = Depends(require_permission(Permission.PURCHASE_MANAGE))
):
    with get_db_session() as db:
        purchase_service.delete_purchase(db, auth, purchase_id)
    return {"message": "Purchase deleted", "id": purchase_id}


# =============================================================================
# CABINET SETTINGS
# =============================================================================

@router.get("/settings", response_model=SettingsResponse)
async def get_cabinet_settings(auth: AuthContext = Depends(require_permission(Permission.SETTINGS_READ))):
    with get_db_session() as db:
        return _settings_out(ensure_cabinet_settings(db, auth.tenant_id))


@router.patch("/settings", response_model=SettingsResponse)
async def patch_cabinet_settings(
    body: SettingsUpdate,
    auth: AuthContext = Depends(require_permission(Permission.SETTINGS_UPDATE))
):
    with get_db_session() as db:
        settings = update_cabinet_settings(db, auth.tenant_id, auth.user_id, **body.model_dump(exclude_unset=True))
        return _settings_out(settings)
