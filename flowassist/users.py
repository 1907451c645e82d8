"""
Collaborators administration.

Users are global logins; what they can do in a cabinet comes from their
membership row. Removing the last membership deactivates the login
instead of deleting it, since time entries and invoices still point at it.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from .audit import record_audit
from .auth import AuthContext, get_password_hash, password_policy_error
from .db.models import GlobalRole, TenantMember, TenantRole, User
from .errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from .tenants import add_member, get_member

logger = logging.getLogger(__name__)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100


def validate_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise ValidationError(f"Name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters")
    return name


def _validate_rate(rate_cents: Optional[int]) -> None:
    if rate_cents is not None and rate_cents < 0:
        raise ValidationError("Rate must be positive")


def list_tenant_users(db: Session, auth: AuthContext) -> List[Tuple[User, TenantRole]]:
    rows = (
        db.query(User, TenantMember.role)
        .join(TenantMember, TenantMember.user_id == User.id)
        .filter(TenantMember.tenant_id == auth.tenant_id)
        .order_by(User.name.asc())
        .all()
    )
    return [(user, role) for user, role in rows]


def _get_tenant_user(db: Session, auth: AuthContext, user_id: str) -> Tuple[User, TenantMember]:
    member = get_member(db, auth.tenant_id, user_id)
    user = db.query(User).filter(User.id == user_id).first() if member else None
    if not user:
        raise NotFoundError("User not found")
    return user, member


def create_tenant_user(db: Session, auth: AuthContext, email: str, name: str, role: TenantRole,
                       password: Optional[str] = None, rate_cents: Optional[int] = None,
                       global_role: GlobalRole = GlobalRole.USER) -> User:
    """Create a login in the current cabinet, or attach an existing one by e-mail."""
    email = email.strip().lower()
    name = validate_name(name)
    _validate_rate(rate_cents)
    if global_role == GlobalRole.SYSADMIN and not auth.is_sysadmin:
        raise PermissionDeniedError("Only a sysadmin can grant the sysadmin role")

    user = db.query(User).filter(User.email == email).first()
    if user:
        if get_member(db, auth.tenant_id, user.id):
            raise ConflictError("User is already a member of this cabinet")
        user.active = True
        add_member(db, auth.tenant_id, user.id, role)
        record_audit(db, auth.tenant_id, auth.user_id, "attach_user", "user", user.id, {"role": role.value})
        logger.info(f"Existing user {email} attached to tenant {auth.tenant_id} as {role.value}")
        return user

    if not password:
        raise ValidationError("Password is required for a new user")
    policy_error = password_policy_error(password)
    if policy_error:
        raise ValidationError(policy_error)

    user = User(
        email=email,
        name=name,
        password_hash=get_password_hash(password),
        global_role=global_role,
        rate_cents=rate_cents,
    )
    db.add(user)
    db.flush()
    add_member(db, auth.tenant_id, user.id, role)
    record_audit(db, auth.tenant_id, auth.user_id, "create_user", "user", user.id, {"role": role.value})
    logger.info(f"User {email} created in tenant {auth.tenant_id} as {role.value}")
    return user


def update_tenant_user(db: Session, auth: AuthContext, user_id: str, role: Optional[TenantRole] = None,
                       rate_cents: Optional[int] = None, active: Optional[bool] = None,
                       name: Optional[str] = None) -> Tuple[User, TenantRole]:
    user, member = _get_tenant_user(db, auth, user_id)

    if role is not None and role != member.role:
        if user.id == auth.user_id and member.role == TenantRole.OWNER:
            raise ConflictError("An owner cannot change their own role")
        member.role = role
    if rate_cents is not None:
        _validate_rate(rate_cents)
        user.rate_cents = rate_cents
    if name is not None:
        user.name = validate_name(name)
    if active is not None:
        if user.id == auth.user_id and not active:
            raise ConflictError("You cannot deactivate yourself")
        user.active = active

    record_audit(db, auth.tenant_id, auth.user_id, "update_user", "user", user.id,
                 {"role": member.role.value, "active": user.active})
    db.flush()
    return user, member.role


def remove_tenant_user(db: Session, auth: AuthContext, user_id: str) -> bool:
    """Drop the membership; returns True when the login was deactivated as a result."""
    if user_id == auth.user_id:
        raise ConflictError("You cannot remove yourself from the cabinet")
    user, member = _get_tenant_user(db, auth, user_id)

    db.delete(member)
    db.flush()

    remaining = db.query(TenantMember).filter(TenantMember.user_id == user.id).count()
    deactivated = remaining == 0 and user.global_role != GlobalRole.SYSADMIN
    if deactivated:
        user.active = False

    record_audit(db, auth.tenant_id, auth.user_id, "remove_user", "user", user.id, {"deactivated": deactivated})
    db.flush()
    return deactivated


def update_profile(db: Session, user: User, name: str) -> User:
    user.name = validate_name(name)
    db.flush()
    return user
