"""
Administration API Endpoints
============================

FastAPI router for cabinets (tenants), collaborators and the audit log.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, EmailStr, Field

from .audit import list_audit, record_audit
from .auth import AuthContext, Permission
from .db.models import GlobalRole, TenantRole, User
from .db.session import get_db_session
from .deps import get_auth_context, get_current_user, require_permission, require_roles
from .errors import BusinessRuleError
from .tenants import create_tenant, list_user_tenants
from . import users as user_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])

STAFF_ROLES = (TenantRole.OWNER, TenantRole.ASSISTANT, TenantRole.COLLABORATOR)


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class TenantCreate(BaseModel):
    """Create cabinet request (sysadmin only)"""
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(None, max_length=100)
    owner_id: Optional[str] = None
    logo_url: Optional[str] = None


class TenantResponse(BaseModel):
    id: str
    slug: str
    name: str
    logo_url: Optional[str]
    active: bool
    role: Optional[str] = None


class UserCreate(BaseModel):
    email: EmailStr
    name: str
    role: TenantRole
    password: Optional[str] = None
    rate_cents: Optional[int] = None
    global_role: GlobalRole = GlobalRole.USER


class UserUpdate(BaseModel):
    role: Optional[TenantRole] = None
    rate_cents: Optional[int] = None
    active: Optional[bool] = None
    name: Optional[str] = None


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str]
    role: Optional[str]
    global_role: str
    rate_cents: Optional[int]
    active: bool
    last_login: Optional[datetime]


class ProfileUpdate(BaseModel):
    name: str


class AuditResponse(BaseModel):
    id: str
    user_id: Optional[str]
    action: str
    entity_type: str
    entity_id: Optional[str]
    details: Dict[str, Any]
    created_at: datetime


def _user_out(user: User, role: Optional[TenantRole]) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=role.value if role else None,
        global_role=user.global_role.value,
        rate_cents=user.rate_cents,
        active=user.active,
        last_login=user.last_login,
    )


def _tenant_out(tenant, role: Optional[TenantRole] = None) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        slug=tenant.slug,
        name=tenant.name,
        logo_url=tenant.logo_url,
        active=tenant.active,
        role=role.value if role else None,
    )


# =============================================================================
# TENANTS
# =============================================================================

@router.get("/tenants", response_model=List[TenantResponse])
async def list_tenants(user: User = Depends(get_current_user)):
    """Cabinets the current user can switch to."""
    with get_db_session() as db:
        db_user = db.query(User).filter(User.id == user.id).first()
        return [_tenant_out(t, role) for t, role in list_user_tenants(db, db_user)]


@router.post("/tenants", response_model=TenantResponse)
async def create_new_tenant(
    body: TenantCreate,
    user: User = Depends(get_current_user)
):
    if user.global_role != GlobalRole.SYSADMIN:
        raise HTTPException(status_code=403, detail="Only a sysadmin can create cabinets")
    try:
        with get_db_session() as db:
            tenant = create_tenant(db, body.name, body.slug, body.owner_id, body.logo_url)
            record_audit(db, tenant.id, user.id, "create_tenant", "tenant", tenant.id, {"slug": tenant.slug})
            return _tenant_out(tenant, TenantRole.OWNER if body.owner_id else None)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to create tenant")
        raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# USERS
# =============================================================================

@router.get("/users/me", response_model=UserResponse)
async def get_me(auth: AuthContext = Depends(get_auth_context)):
    with get_db_session() as db:
        user = db.query(User).filter(User.id == auth.user_id).first()
        return _user_out(user, auth.tenant_role)


@router.patch("/users/me", response_model=UserResponse)
async def update_me(body: ProfileUpdate, auth: AuthContext = Depends(get_auth_context)):
    with get_db_session() as db:
        user = db.query(User).filter(User.id == auth.user_id).first()
        user_service.update_profile(db, user, body.name)
        return _user_out(user, auth.tenant_role)


@router.get("/users", response_model=List[UserResponse])
async def list_users(auth: AuthContext = Depends(require_roles(*STAFF_ROLES))):
    """Members of the current cabinet."""
    with get_db_session() as db:
        return [_user_out(user, role) for user, role in user_service.list_tenant_users(db, auth)]


@router.post("/users", response_model=UserResponse)
async def create_user(
    body: UserCreate,
    auth: AuthContext = Depends(require_permission(Permission.USER_MANAGE))
):
    """
    Create a collaborator, or attach an existing login with the same e-mail.
    """
    try:
        with get_db_session() as db:
            user = user_service.create_tenant_user(
                db, auth,
                email=body.email,
                name=body.name,
                role=body.role,
                password=body.password,
                rate_cents=body.rate_cents,
                global_role=body.global_role,
            )
            return _user_out(user, body.role)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to create user")
        raise HTTPException(status_code=500, detail=str(e))


@router.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    body: UserUpdate,
    auth: AuthContext = Depends(require_permission(Permission.USER_MANAGE))
):
    with get_db_session() as db:
        user, role = user_service.update_tenant_user(
            db, auth, user_id, role=body.role, rate_cents=body.rate_cents, active=body.active, name=body.name,
        )
        return _user_out(user, role)


@router.delete("/users/{user_id}")
async def remove_user(
    user_id: str,
    auth: AuthContext = Depends(require_permission(Permission.USER_MANAGE))
):
    with get_db_session() as db:
        deactivated = user_service.remove_tenant_user(db, auth, user_id)
    return {"message": "User removed from the cabinet", "id": user_id, "deactivated": deactivated}


# =============================================================================
# AUDIT
# =============================================================================

@router.get("/audit", response_model=List[AuditResponse])
async def get_audit_log(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    auth: AuthContext = Depends(require_permission(Permission.AUDIT_READ))
):
    with get_db_session() as db:
        return [
            AuditResponse(
                id=row.id,
                user_id=row.user_id,
                action=row.action,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                details=row.details or {},
                created_at=row.created_at,
            )
            for row in list_audit(db, auth.tenant_id, limit, entity_type, entity_id)
        ]
