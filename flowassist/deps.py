"""
FastAPI dependencies shared by the routers.

- `get_db_dependency`: SQLAlchemy session per request
- `get_current_user`: authenticated user (no tenant)
- `get_auth_context`: authenticated user inside the resolved tenant
- `require_permission` / `require_roles`: guard factories
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from .auth import AuthContext, Permission, decode_token, get_auth_service
from .config import get_settings
from .db.models import TenantRole, TokenBlacklist
from .db.session import get_db
from .tenants import resolve_tenant
from .token_blacklist import is_blacklisted

logger = logging.getLogger(__name__)


def get_db_dependency():
    """Get database session for FastAPI dependency injection"""
    db = next(get_db())
    try:
        yield db
    finally:
        db.close()


def _token_revoked(db: Session, jti: Optional[str]) -> bool:
    if not jti:
        return False
    redis_result = is_blacklisted(jti)
    if redis_result is True:
        return True
    return db.query(TokenBlacklist).filter(TokenBlacklist.jti == jti).first() is not None


async def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_email: Optional[str] = Header(None, alias="X-User-Email"),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: Session = Depends(get_db_dependency),
):
    """
    Get the current user from either:
    - `Authorization: Bearer <jwt>` (preferred when present)
    - `X-User-Id` / `X-User-Email` headers, only when ALLOW_HEADER_AUTH is set
      in development (internal tooling and tests)
    """
    token_user_id: Optional[str] = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        payload = decode_token(token, expected_type="access")
        if not payload:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        if _token_revoked(db, payload.get("jti")):
            raise HTTPException(status_code=401, detail="Token has been revoked")
        token_user_id = payload.get("sub")

    if token_user_id:
        effective_user_id, effective_email = token_user_id, None
    elif get_settings().header_auth_enabled:
        effective_user_id, effective_email = x_user_id, x_user_email
    else:
        effective_user_id = effective_email = None

    if not effective_user_id and not effective_email:
        raise HTTPException(status_code=401, detail="Authentication required")

    user = get_auth_service(db).get_user(effective_user_id, email=effective_email)
    if not user:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


async def get_auth_context(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
    user=Depends(get_current_user),
    db: Session = Depends(get_db_dependency),
) -> AuthContext:
    """Auth context scoped to the tenant named by X-Tenant-Id."""
    tenant, role = resolve_tenant(db, user, x_tenant_id)
    return get_auth_service(db).build_context(user, tenant_id=tenant.id, tenant_role=role)


def require_permission(permission: Permission):
    """Dependency factory: 403 unless the effective role grants `permission`."""

    async def _checker(
        auth: AuthContext = Depends(get_auth_context),
        db: Session = Depends(get_db_dependency),
    ) -> AuthContext:
        if not get_auth_service(db).require_permission(auth, permission):
            raise HTTPException(status_code=403, detail="Permission denied")
        return auth

    return _checker


def require_roles(*roles: TenantRole):
    """Dependency factory: 403 unless the effective tenant role is one of `roles`."""

    async def _checker(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.effective_role not in roles:
            logger.warning(f"Role denied: {auth.user_id} ({auth.effective_role}) not in {[r.value for r in roles]}")
            raise HTTPException(status_code=403, detail="Permission denied")
        return auth

    return _checker
