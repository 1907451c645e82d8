"""
Authorization Module (RBAC) with JWT Support
=============================================

Role-Based Access Control for the cabinet back office.

Global Roles (platform-wide):
- sysadmin: acts as owner in every tenant, may create tenants
- user: regular login, rights come from tenant membership

Tenant Roles (per cabinet):
- owner: everything in the cabinet, including collaborators and settings
- assistant: clients, matters, billing, documents and all timesheets
- collaborator: own time, expenses, to-dos and agenda on assigned matters
- client: portal access to the documents of their client

Authorization Flow:
1. Load user from JWT token (or X-User-Id / X-User-Email headers in dev tooling)
2. Resolve the tenant from X-Tenant-Id and the user's memberships
3. Check permissions based on the effective role in that tenant
"""

import re
import uuid
import logging
from typing import Optional, List, Tuple, Dict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

import jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .config import get_settings
from .db.models import GlobalRole, TenantRole

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


# =============================================================================
# PERMISSION TYPES
# =============================================================================

class Permission(str, Enum):
    """Available permissions in the system"""
    # Clients & matters
    CLIENT_READ = "client:read"
    CLIENT_MANAGE = "client:manage"
    MATTER_READ = "matter:read"
    MATTER_MANAGE = "matter:manage"

    # Time & expenses
    TIMESHEET_OWN = "timesheet:own"
    TIMESHEET_ALL = "timesheet:all"
    EXPENSE_OWN = "expense:own"
    EXPENSE_ALL = "expense:all"

    # Billing
    BILLING_MANAGE = "billing:manage"
    PURCHASE_MANAGE = "purchase:manage"
    KPI_READ = "kpi:read"
    SETTINGS_READ = "settings:read"
    SETTINGS_UPDATE = "settings:update"

    # Documents
    DOC_READ = "doc:read"
    DOC_MANAGE = "doc:manage"

    # Collaboration
    MESSAGE_USE = "message:use"
    TODO_OWN = "todo:own"
    TODO_ASSIGN = "todo:assign"
    AGENDA_USE = "agenda:use"

    # Administration
    USER_MANAGE = "user:manage"
    AUDIT_READ = "audit:read"
    TENANT_CREATE = "tenant:create"


_STAFF_BASE = {
    Permission.MATTER_READ,
    Permission.TIMESHEET_OWN, Permission.EXPENSE_OWN,
    Permission.SETTINGS_READ,
    Permission.MESSAGE_USE, Permission.TODO_OWN, Permission.AGENDA_USE,
}

_MANAGER_BASE = _STAFF_BASE | {
    Permission.CLIENT_READ, Permission.CLIENT_MANAGE, Permission.MATTER_MANAGE,
    Permission.TIMESHEET_ALL, Permission.EXPENSE_ALL,
    Permission.BILLING_MANAGE, Permission.PURCHASE_MANAGE, Permission.KPI_READ,
    Permission.DOC_READ, Permission.DOC_MANAGE,
    Permission.TODO_ASSIGN,
}

# Role to permissions mapping
ROLE_PERMISSIONS = {
    TenantRole.OWNER: _MANAGER_BASE | {
        Permission.SETTINGS_UPDATE,
        Permission.USER_MANAGE,
        Permission.AUDIT_READ,
    },
    TenantRole.ASSISTANT: set(_MANAGER_BASE),
    TenantRole.COLLABORATOR: set(_STAFF_BASE),
    TenantRole.CLIENT: {
        Permission.DOC_READ,
        Permission.MESSAGE_USE,
    },
}


# =============================================================================
# PASSWORD HASHING & POLICY
# =============================================================================

# bcrypt truncates passwords at 72 bytes; enforce to avoid 500s.
MAX_PASSWORD_BYTES = 72
MIN_PASSWORD_LENGTH = 8

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def is_password_too_long(password: str) -> bool:
    """Return True if password exceeds bcrypt 72-byte limit."""
    return len(password.encode("utf-8")) > MAX_PASSWORD_BYTES


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash"""
    if is_password_too_long(plain_password):
        logger.warning("Auth failed: password exceeds bcrypt 72-byte limit")
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError as e:
        logger.warning(f"Auth failed: invalid password format ({e})")
        return False


def get_password_hash(password: str) -> str:
    """Hash a password"""
    if is_password_too_long(password):
        raise ValueError("Password exceeds bcrypt 72-byte limit")
    return pwd_context.hash(password)


PASSWORD_RULES = [
    ("min_length", lambda pw: len(pw) >= MIN_PASSWORD_LENGTH),
    ("uppercase", lambda pw: re.search(r"[A-Z]", pw) is not None),
    ("lowercase", lambda pw: re.search(r"[a-z]", pw) is not None),
    ("digit", lambda pw: re.search(r"[0-9]", pw) is not None),
    ("special", lambda pw: re.search(r"[^A-Za-z0-9]", pw) is not None),
]


def validate_password(password: str) -> Tuple[bool, List[Dict[str, object]]]:
    """
    Check a password against the policy.

    Returns (is_valid, rules) where each rule is {"key": ..., "passed": ...}.
    """
    rules = [{"key": key, "passed": bool(check(password))} for key, check in PASSWORD_RULES]
    return all(r["passed"] for r in rules), rules


def password_policy_error(password: str) -> Optional[str]:
    """Human readable reason a password is rejected, or None."""
    if is_password_too_long(password):
        return f"Password too long (max {MAX_PASSWORD_BYTES} bytes)"
    is_valid, rules = validate_password(password)
    if is_valid:
        return None
    failed = ", ".join(r["key"] for r in rules if not r["passed"])
    return f"Password does not meet policy: {failed}"


# =============================================================================
# JWT TOKEN HANDLING
# =============================================================================

def _encode(payload: dict) -> str:
    return jwt.encode(payload, get_settings().jwt_secret_key, algorithm=JWT_ALGORITHM)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token"""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    to_encode.update({"exp": expire, "type": "access", "jti": uuid.uuid4().hex})
    return _encode(to_encode)


def create_refresh_token(data: dict) -> str:
    """Create a JWT refresh token"""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.utcnow() + timedelta(days=settings.jwt_refresh_token_expire_days)
    to_encode.update({"exp": expire, "type": "refresh", "jti": uuid.uuid4().hex})
    return _encode(to_encode)


def create_download_token(document_id: str, tenant_id: str, expires_seconds: Optional[int] = None) -> str:
    """Short-lived token embedded in a signed download URL."""
    seconds = expires_seconds if expires_seconds is not None else get_settings().download_url_expire_seconds
    return _encode({
        "sub": document_id,
        "tenant_id": tenant_id,
        "type": "download",
        "exp": datetime.utcnow() + timedelta(seconds=seconds),
    })


def decode_token(token: str, expected_type: Optional[str] = None) -> Optional[dict]:
    """Decode and validate a JWT token"""
    try:
        payload = jwt.decode(token, get_settings().jwt_secret_key, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        logger.warning(f"Invalid JWT token: {e}")
        return None

    if expected_type and payload.get("type") != expected_type:
        logger.warning(f"Unexpected JWT token type: {payload.get('type')} (wanted {expected_type})")
        return None
    return payload


# =============================================================================
# AUTH CONTEXT
# =============================================================================

@dataclass
class AuthContext:
    """Authorization context for a request"""
    user_id: str
    email: str
    name: Optional[str]
    global_role: GlobalRole
    tenant_id: Optional[str] = None
    tenant_role: Optional[TenantRole] = None
    client_ids: List[str] = field(default_factory=list)  # portal users only

    @property
    def is_sysadmin(self) -> bool:
        return self.global_role == GlobalRole.SYSADMIN

    @property
    def effective_role(self) -> Optional[TenantRole]:
        """Role used for checks; a sysadmin acts as owner everywhere."""
        if self.is_sysadmin:
            return TenantRole.OWNER
        return self.tenant_role

    @property
    def is_owner(self) -> bool:
        return self.effective_role == TenantRole.OWNER

    @property
    def can_manage(self) -> bool:
        """Owner or assistant"""
        return self.effective_role in (TenantRole.OWNER, TenantRole.ASSISTANT)

    @property
    def is_client(self) -> bool:
        return self.effective_role == TenantRole.CLIENT

    def has_permission(self, permission: Permission) -> bool:
        """Check if user has a specific permission"""
        if permission == Permission.TENANT_CREATE:
            return self.is_sysadmin
        return permission in ROLE_PERMISSIONS.get(self.effective_role, set())


# =============================================================================
# AUTH SERVICE (SQLAlchemy-based)
# =============================================================================

class AuthService:
    """Authorization service using SQLAlchemy"""

    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: Optional[str], email: Optional[str] = None):
        """Find an active user by id, falling back to email."""
        from .db.models import User

        user = None
        if user_id:
            user = self.db.query(User).filter(User.id == user_id).first()
        if (not user or not user.active) and email:
            user = self.db.query(User).filter(User.email == email.lower(), User.active == True).first()

        if not user or not user.active:
            if user_id:
                logger.warning(f"Auth failed: user {user_id} not found or inactive")
            else:
                logger.warning("Auth failed: missing user identity (no user_id/email)")
            return None
        return user

    def build_context(self, user, tenant_id: Optional[str] = None, tenant_role: Optional[TenantRole] = None) -> AuthContext:
        """Build auth context for a user inside an (optional) tenant."""
        from .db.models import ClientUser

        client_ids: List[str] = []
        if tenant_id and tenant_role == TenantRole.CLIENT:
            client_ids = [
                cu.client_id for cu in self.db.query(ClientUser).filter(
                    ClientUser.tenant_id == tenant_id,
                    ClientUser.user_id == user.id,
                ).all()
            ]

        return AuthContext(
            user_id=user.id,
            email=user.email,
            name=user.name,
            global_role=user.global_role,
            tenant_id=tenant_id,
            tenant_role=tenant_role,
            client_ids=client_ids,
        )

    def authenticate_user(self, email: str, password: str):
        """
        Authenticate a user by email and password.

        Returns:
            The User row if authentication succeeds, None otherwise
        """
        from .db.models import User

        user = self.db.query(User).filter(User.email == email.lower(), User.active == True).first()
        if not user:
            logger.warning(f"Auth failed: email {email} not found")
            return None

        if not user.password_hash:
            logger.warning(f"Auth failed: user {user.id} has no password set")
            return None

        if not verify_password(password, user.password_hash):
            logger.warning(f"Auth failed: invalid password for user {user.id}")
            return None

        user.last_login = datetime.utcnow()
        self.db.commit()
        return user

    def require_permission(self, auth: AuthContext, permission: Permission) -> bool:
        """Check if user has permission, logging denials."""
        if not auth.has_permission(permission):
            logger.warning(
                f"Permission denied: {auth.user_id} ({auth.effective_role}) lacks {permission.value}"
            )
            return False
        return True


def get_auth_service(db: Session) -> AuthService:
    """Get auth service instance"""
    return AuthService(db)
