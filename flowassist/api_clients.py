"""
Clients & Matters API Endpoints
===============================

FastAPI router for clients, matters, staffing assignments and client
portal links.
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field

from .auth import AuthContext, Permission
from .db.models import BillingType, MatterStatus
from .db.session import get_db_session
from .deps import get_auth_context, require_permission
from .errors import BusinessRuleError
from . import clients as client_service
from .timesheet import budget_status

logger = logging.getLogger(__name__)

router = APIRouter(tags=["clients"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class ClientCreate(BaseModel):
    """Create client request"""
    name: str = Field(..., min_length=1, max_length=255)
    code: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = None
    billing_email: Optional[str] = None
    vat_number: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None


class ClientUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    address: Optional[str] = None
    billing_email: Optional[str] = None
    vat_number: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    active: Optional[bool] = None


class ClientResponse(BaseModel):
    id: str
    code: str
    name: str
    address: Optional[str]
    billing_email: Optional[str]
    vat_number: Optional[str]
    contact_name: Optional[str]
    contact_phone: Optional[str]
    active: bool
    created_at: datetime


class MatterCreate(BaseModel):
    """Create matter request"""
    client_id: str
    label: str = Field(..., min_length=1, max_length=255)
    code: Optional[str] = Field(None, max_length=50)
    billing_type: BillingType = BillingType.TIME_BASED
    rate_cents: Optional[int] = None
    vat_rate: Optional[int] = None
    flat_fee_cents: Optional[int] = None
    max_amount_ht_cents: Optional[int] = None
    intervention_nature: Optional[str] = None
    client_sector: Optional[str] = None


class MatterUpdate(BaseModel):
    label: Optional[str] = Field(None, min_length=1, max_length=255)
    status: Optional[MatterStatus] = None
    billing_type: Optional[BillingType] = None
    rate_cents: Optional[int] = None
    vat_rate: Optional[int] = None
    flat_fee_cents: Optional[int] = None
    max_amount_ht_cents: Optional[int] = None
    intervention_nature: Optional[str] = None
    client_sector: Optional[str] = None


class MatterResponse(BaseModel):
    id: str
    client_id: str
    code: str
    label: str
    status: str
    billing_type: str
    rate_cents: Optional[int]
    vat_rate: int
    flat_fee_cents: Optional[int]
    max_amount_ht_cents: Optional[int]
    intervention_nature: Optional[str]
    client_sector: Optional[str]
    created_at: datetime


class AssignmentCreate(BaseModel):
    matter_id: str
    user_id: str
    start_date: date
    end_date: Optional[date] = None


class AssignmentResponse(BaseModel):
    id: str
    matter_id: str
    user_id: str
    start_date: date
    end_date: Optional[date]


class ClientUserCreate(BaseModel):
    """Attach a portal login to a client"""
    client_id: str
    user_id: str
    matter_ids: List[str] = []


class ClientUserResponse(BaseModel):
    id: str
    client_id: str
    user_id: str
    created_at: datetime


def _client_out(client) -> ClientResponse:
    return ClientResponse(
        id=client.id,
        code=client.code,
        name=client.name,
        address=client.address,
        billing_email=client.billing_email,
        vat_number=client.vat_number,
        contact_name=client.contact_name,
        contact_phone=client.contact_phone,
        active=client.active,
        created_at=client.created_at,
    )


def _matter_out(matter) -> MatterResponse:
    return MatterResponse(
        id=matter.id,
        client_id=matter.client_id,
        code=matter.code,
        label=matter.label,
        status=matter.status.value,
        billing_type=matter.billing_type.value,
        rate_cents=matter.rate_cents,
        vat_rate=matter.vat_rate,
        flat_fee_cents=matter.flat_fee_cents,
        max_amount_ht_cents=matter.max_amount_ht_cents,
        intervention_nature=matter.intervention_nature,
        client_sector=matter.client_sector,
        created_at=matter.created_at,
    )


def _assignment_out(assignment) -> AssignmentResponse:
    return AssignmentResponse(
        id=assignment.id,
        matter_id=assignment.matter_id,
        user_id=assignment.user_id,
        start_date=assignment.start_date,
        end_date=assignment.end_date,
    )


# =============================================================================
# CLIENTS
# =============================================================================

@router.get("/clients", response_model=List[ClientResponse])
async def list_clients(
    include_inactive: bool = Query(False),
    auth: AuthContext = Depends(get_auth_context)
):
    """List the cabinet's clients (portal users only see their own)."""
    try:
        with get_db_session() as db:
            return [_client_out(c) for c in client_service.list_clients(db, auth, include_inactive)]
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to list clients")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/clients", response_model=ClientResponse)
async def create_client(
    body: ClientCreate,
    auth: AuthContext = Depends(require_permission(Permission.CLIENT_MANAGE))
):
    try:
        with get_db_session() as db:
            client = client_service.create_client(db, auth, **body.model_dump())
            return _client_out(client)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to create client")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/clients/{client_id}", response_model=ClientResponse)
async def get_client(client_id: str, auth: AuthContext = Depends(get_auth_context)):
    with get_db_session() as db:
        return _client_out(client_service.get_client(db, auth, client_id))


@router.patch("/clients/{client_id}", response_model=ClientResponse)
async def update_client(
    client_id: str,
    body: ClientUpdate,
    auth: AuthContext = Depends(require_permission(Permission.CLIENT_MANAGE))
):
    try:
        with get_db_session() as db:
            client = client_service.update_client(db, auth, client_id, **body.model_dump(exclude_unset=True))
            return _client_out(client)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to update client")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/clients/{client_id}")
async def delete_client(
    client_id: str,
    auth: AuthContext = Depends(require_permission(Permission.CLIENT_MANAGE))
):
    """
    Delete a client. A client that still has matters is deactivated instead.
    """
    try:
        with get_db_session() as db:
            deleted = client_service.delete_client(db, auth, client_id)
        if deleted:
            return {"message": "Client deleted", "id": client_id, "deleted": True}
        return {"message": "Client has matters and was deactivated", "id": client_id, "deleted": False}
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to delete client")
        raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# MATTERS
# =============================================================================

@router.get("/matters", response_model=List[MatterResponse])
async def list_matters(
    client_id: Optional[str] = Query(None),
    status: Optional[MatterStatus] = Query(None),
    auth: AuthContext = Depends(get_auth_context)
):
    """
    List matters. Collaborators only see matters they are assigned to.
    """
    try:
        with get_db_session() as db:
            return [_matter_out(m) for m in client_service.list_matters(db, auth, client_id, status)]
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to list matters")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/matters", response_model=MatterResponse)
async def create_matter(
    body: MatterCreate,
    auth: AuthContext = Depends(require_permission(Permission.MATTER_MANAGE))
):
    try:
        with get_db_session() as db:
            matter = client_service.create_matter(db, auth, **body.model_dump())
            return _matter_out(matter)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to create matter")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/matters/{matter_id}", response_model=MatterResponse)
async def get_matter(matter_id: str, auth: AuthContext = Depends(get_auth_context)):
    with get_db_session() as db:
        return _matter_out(client_service.get_matter(db, auth, matter_id))


@router.patch("/matters/{matter_id}", response_model=MatterResponse)
async def update_matter(
    matter_id: str,
    body: MatterUpdate,
    auth: AuthContext = Depends(require_permission(Permission.MATTER_MANAGE))
):
    try:
        with get_db_session() as db:
            matter = client_service.update_matter(db, auth, matter_id, **body.model_dump(exclude_unset=True))
            return _matter_out(matter)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to update matter")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/matters/{matter_id}/budget")
async def get_matter_budget(
    matter_id: str,
    auth: AuthContext = Depends(require_permission(Permission.MATTER_MANAGE))
):
    """Budget consumption of a capped time-based matter."""
    with get_db_session() as db:
        matter = client_service.get_matter(db, auth, matter_id)
        status = budget_status(db, matter)
    if status is None:
        return {"matter_id": matter_id, "budget": None}
    return {"matter_id": matter_id, "budget": status}


# =============================================================================
# ASSIGNMENTS
# =============================================================================

@router.get("/assignments", response_model=List[AssignmentResponse])
async def list_assignments(
    matter_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_permission(Permission.MATTER_READ))
):
    with get_db_session() as db:
        return [_assignment_out(a) for a in client_service.list_assignments(db, auth, matter_id, user_id)]


@router.post("/assignments", response_model=AssignmentResponse)
async def create_assignment(
    body: AssignmentCreate,
    auth: AuthContext = Depends(require_permission(Permission.MATTER_MANAGE))
):
    try:
        with get_db_session() as db:
            assignment = client_service.create_assignment(
                db, auth, body.matter_id, body.user_id, body.start_date, body.end_date
            )
            return _assignment_out(assignment)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to create assignment")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/assignments/{assignment_id}")
async def delete_assignment(
    assignment_id: str,
    auth: AuthContext = Depends(require_permission(Permission.MATTER_MANAGE))
):
    with get_db_session() as db:
        client_service.delete_assignment(db, auth, assignment_id)
    return {"message": "Assignment deleted", "id": assignment_id}


# =============================================================================
# CLIENT PORTAL USERS
# =============================================================================

@router.get("/client-users", response_model=List[ClientUserResponse])
async def list_client_users(
    client_id: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_permission(Permission.CLIENT_MANAGE))
):
    with get_db_session() as db:
        return [
            ClientUserResponse(id=link.id, client_id=link.client_id, user_id=link.user_id, created_at=link.created_at)
            for link in client_service.list_client_users(db, auth, client_id)
        ]


@router.post("/client-users", response_model=ClientUserResponse)
async def link_client_user(
    body: ClientUserCreate,
    auth: AuthContext = Depends(require_permission(Permission.CLIENT_MANAGE))
):
    try:
        with get_db_session() as db:
            link = client_service.link_client_user(db, auth, body.client_id, body.user_id, body.matter_ids)
            return ClientUserResponse(id=link.id, client_id=link.client_id, user_id=link.user_id,
                                      created_at=link.created_at)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to link client user")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/client-users/{link_id}")
async def unlink_client_user(
    link_id: str,
    auth: AuthContext = Depends(require_permission(Permission.CLIENT_MANAGE))
):
    with get_db_session() as db:
        client_service.unlink_client_user(db, auth, link_id)
    return {"message": "Client user unlinked", "id": link_id}
