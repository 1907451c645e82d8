"""
FlowAssist Back-Office API
==========================

FastAPI application for the cabinet back office: timesheets, invoicing,
clients and matters, client documents, messaging, to-dos and agenda.

Core Endpoints:
- GET  /health                - Health check
- POST /auth/login            - Email/password login (JWT)
- POST /auth/register         - Create an account and its cabinet
- GET  /auth/me               - Current user and cabinets
- POST /auth/refresh          - Exchange a refresh token
- POST /auth/logout           - Revoke the current token
- POST /auth/forgot-password  - Request a reset link
- POST /auth/reset-password   - Set a new password from a reset token

Tenant-scoped routers live under /api/v1 (see the api_* modules).
Requests pick the cabinet with the `X-Tenant-Id` header (id or slug).

Run with:
    uvicorn flowassist.api:app --host 0.0.0.0 --port 8000
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Header, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from .config import get_settings
from .auth import (
    get_auth_service,
    create_access_token, create_refresh_token, decode_token,
    get_password_hash, password_policy_error, validate_password,
    is_password_too_long, MAX_PASSWORD_BYTES,
)
from .db.models import User, PasswordResetToken, TokenBlacklist
from .db.session import init_db
from .deps import get_db_dependency, get_current_user, _token_revoked
from .errors import BusinessRuleError
from .middleware.security import SecurityHeadersMiddleware
from .tenants import create_tenant, list_user_tenants
from .users import validate_name

from .api_admin import router as admin_router
from .api_billing import router as billing_router
from .api_clients import router as clients_router
from .api_collab import router as collab_router
from .api_documents import router as documents_router
from .api_reports import router as reports_router
from .api_timesheet import router as timesheet_router

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

settings = get_settings()

app = FastAPI(
    title="FlowAssist",
    description="Back office for professional-services cabinets: time, invoicing, clients and documents",
    version=settings.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)


def _parse_cors_origins(raw: str) -> List[str]:
    origins: List[str] = []
    for item in (raw or "").split(","):
        origin = item.strip().strip('"').strip("'").rstrip("/")
        if origin:
            origins.append(origin)
    return origins


CORS_ALLOW_ORIGINS = _parse_cors_origins(settings.cors_allow_origins)
logger.info(f"CORS allow origins: {CORS_ALLOW_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(BusinessRuleError)
async def business_rule_exception_handler(request: Request, exc: BusinessRuleError):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


for _router in (
    admin_router,
    clients_router,
    timesheet_router,
    billing_router,
    documents_router,
    collab_router,
    reports_router,
):
    app.include_router(_router, prefix="/api/v1")


@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    settings = get_settings()
    logger.info(f"Starting FlowAssist v{settings.service_version} ({settings.environment})")
    logger.info(f"Storage backend: {settings.storage_backend} ({settings.storage_root})")
    for warning in settings.validate_config():
        logger.warning(f"Config: {warning}")
    init_db()


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": get_settings().service_version,
        "timestamp": datetime.now().isoformat(),
    }


# =============================================================================
# Auth Endpoints (JWT)
# =============================================================================

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"


class LoginResponse(TokenResponse):
    user_id: str
    tenants: List[dict] = []


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    name: str
    cabinet_name: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class PasswordPolicyRequest(BaseModel):
    password: str


def _tenants_payload(db: Session, user: User) -> List[dict]:
    return [
        {
            "id": tenant.id,
            "slug": tenant.slug,
            "name": tenant.name,
            "role": role.value if role else None,
        }
        for tenant, role in list_user_tenants(db, user)
    ]


def _issue_tokens(user: User) -> dict:
    token_data = {"sub": user.id, "email": user.email}
    return {
        "access_token": create_access_token(token_data),
        "refresh_token": create_refresh_token(token_data),
    }


def _check_password_length(password: str) -> None:
    if is_password_too_long(password):
        raise HTTPException(
            status_code=400,
            detail=f"Password too long (max {MAX_PASSWORD_BYTES} bytes)"
        )


@app.post("/auth/login", tags=["Auth"], response_model=LoginResponse)
async def login(request: LoginRequest, db: Session = Depends(get_db_dependency)):
    """
    Login with email and password.
    Returns JWT tokens and the cabinets the user can enter.
    """
    _check_password_length(request.password)

    user = get_auth_service(db).authenticate_user(request.email, request.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    return LoginResponse(user_id=user.id, tenants=_tenants_payload(db, user), **_issue_tokens(user))


@app.post("/auth/register", tags=["Auth"], response_model=LoginResponse)
async def register(request: RegisterRequest, db: Session = Depends(get_db_dependency)):
    """
    Register a new user with email and password.
    A new cabinet is created with the registrant as owner.
    """
    _check_password_length(request.password)
    policy_error = password_policy_error(request.password)
    if policy_error:
        raise HTTPException(status_code=400, detail=policy_error)

    email = request.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=400, detail="Email already registered")

    try:
        user = User(
            email=email,
            name=validate_name(request.name),
            password_hash=get_password_hash(request.password),
        )
        db.add(user)
        db.flush()
        create_tenant(db, name=request.cabinet_name.strip(), owner_id=user.id)
        db.commit()
    except BusinessRuleError:
        db.rollback()
        raise

    logger.info(f"Registered user {user.id} with cabinet '{request.cabinet_name}'")
    return LoginResponse(user_id=user.id, tenants=_tenants_payload(db, user), **_issue_tokens(user))


@app.post("/auth/password-policy", tags=["Auth"])
async def password_policy(request: PasswordPolicyRequest):
    """Evaluate a candidate password against the policy rules (for live form feedback)."""
    is_valid, rules = validate_password(request.password)
    return {"valid": is_valid, "rules": rules}


@app.get("/auth/me", tags=["Auth"])
async def auth_me(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db_dependency)
):
    """Get current authenticated user info and cabinets"""
    return {
        "user_id": user.id,
        "email": user.email,
        "name": user.name,
        "global_role": user.global_role.value,
        "rate_cents": user.rate_cents,
        "tenants": _tenants_payload(db, user),
    }


@app.post("/auth/forgot-password", tags=["Auth"])
async def forgot_password(request: ForgotPasswordRequest, db: Session = Depends(get_db_dependency)):
    """
    Request a password reset token.
    Without SMTP in development, the token is returned in the response.
    """
    from .email_utils import send_password_reset_email, is_email_configured

    message = {"message": "If this email is registered, a reset link will be sent."}

    user = db.query(User).filter(User.email == request.email.strip().lower(), User.active == True).first()
    if not user:
        return message

    token = secrets.token_urlsafe(32)
    token_hash = hashlib.sha256(token.encode()).hexdigest()

    db.query(PasswordResetToken).filter(PasswordResetToken.user_id == user.id).delete()
    db.add(PasswordResetToken(
        user_id=user.id,
        token_hash=token_hash,
        expires_at=datetime.utcnow() + timedelta(hours=1)
    ))
    db.commit()

    if not send_password_reset_email(to_email=user.email, reset_token=token, user_name=user.name):
        logger.warning(f"Password reset e-mail failed for user {user.id}")

    response = dict(message)
    if get_settings().is_development and not is_email_configured():
        response["_dev_token"] = token
        response["_dev_note"] = "SMTP not configured. Configure SMTP_HOST, SMTP_USER, SMTP_PASSWORD to send real emails."
    return response


@app.post("/auth/reset-password", tags=["Auth"])
async def reset_password(request: ResetPasswordRequest, db: Session = Depends(get_db_dependency)):
    """
    Reset password using a reset token.
    """
    _check_password_length(request.new_password)
    policy_error = password_policy_error(request.new_password)
    if policy_error:
        raise HTTPException(status_code=400, detail=policy_error)

    token_hash = hashlib.sha256(request.token.encode()).hexdigest()
    reset_token = db.query(PasswordResetToken).filter(
        PasswordResetToken.token_hash == token_hash,
        PasswordResetToken.used_at == None,
        PasswordResetToken.expires_at > datetime.utcnow()
    ).first()
    if not reset_token:
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")

    user = db.query(User).filter(User.id == reset_token.user_id).first()
    if not user:
        raise HTTPException(status_code=400, detail="User not found")

    user.password_hash = get_password_hash(request.new_password)
    reset_token.used_at = datetime.utcnow()
    db.commit()

    return {"message": "Password reset successfully"}


@app.post("/auth/refresh", tags=["Auth"], response_model=TokenResponse)
async def refresh_token(request: RefreshTokenRequest, db: Session = Depends(get_db_dependency)):
    """
    Refresh an access token using a refresh token.
    """
    payload = decode_token(request.refresh_token, expected_type="refresh")
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    if _token_revoked(db, payload.get("jti")):
        raise HTTPException(status_code=401, detail="Token has been revoked")

    user = db.query(User).filter(User.id == payload.get("sub"), User.active == True).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return TokenResponse(**_issue_tokens(user))


@app.post("/auth/logout", tags=["Auth"])
async def logout(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db_dependency)
):
    """
    Logout and invalidate the current access token.
    """
    from .token_blacklist import add_to_blacklist

    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="No token provided")

    token = authorization.split(" ", 1)[1].strip()
    payload = decode_token(token)
    if not payload:
        return {"message": "Logged out"}

    jti = payload.get("jti") or hashlib.sha256(token.encode()).hexdigest()[:32]
    exp = payload.get("exp")
    token_type = payload.get("type", "access")
    expires_at = datetime.utcfromtimestamp(exp) if exp else datetime.utcnow() + timedelta(hours=1)

    add_to_blacklist(jti, expires_at, token_type)

    existing = db.query(TokenBlacklist).filter(TokenBlacklist.jti == jti).first()
    if not existing:
        db.add(TokenBlacklist(
            jti=jti,
            token_type=token_type,
            user_id=payload.get("sub"),
            expires_at=expires_at
        ))
        db.commit()

    return {"message": "Logged out successfully"}
