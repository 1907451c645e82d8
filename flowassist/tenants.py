"""
Tenant helpers.

Resolves the cabinet a request acts on and manages memberships.
"""

import re
import unicodedata
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from .db.models import Tenant, TenantMember, TenantRole, CabinetSettings, User, GlobalRole
from .errors import ValidationError, PermissionDeniedError, ConflictError


def slugify(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", normalized.lower()).strip("-")
    return slug or "cabinet"


def get_member(db: Session, tenant_id: str, user_id: str) -> Optional[TenantMember]:
    return (
        db.query(TenantMember)
        .filter(
            TenantMember.tenant_id == tenant_id,
            TenantMember.user_id == user_id,
        )
        .first()
    )


def list_user_tenants(db: Session, user: User) -> List[Tuple[Tenant, Optional[TenantRole]]]:
    """Active tenants visible to a user, with the user's role in each (None for sysadmin-only access)."""
    if user.global_role == GlobalRole.SYSADMIN:
        tenants = db.query(Tenant).filter(Tenant.active == True).order_by(Tenant.name.asc()).all()
        roles = {
            m.tenant_id: m.role
            for m in db.query(TenantMember).filter(TenantMember.user_id == user.id).all()
        }
        return [(t, roles.get(t.id)) for t in tenants]

    rows = (
        db.query(Tenant, TenantMember.role)
        .join(TenantMember, TenantMember.tenant_id == Tenant.id)
        .filter(TenantMember.user_id == user.id, Tenant.active == True)
        .order_by(Tenant.name.asc())
        .all()
    )
    return [(tenant, role) for tenant, role in rows]


def _find_tenant(db: Session, ref: str) -> Optional[Tenant]:
    return db.query(Tenant).filter((Tenant.id == ref) | (Tenant.slug == ref)).first()


def resolve_tenant(db: Session, user: User, tenant_ref: Optional[str]) -> Tuple[Tenant, Optional[TenantRole]]:
    """
    Pick the tenant for a request.

    `tenant_ref` is the X-Tenant-Id header (id or slug). Without it, a user
    with exactly one tenant gets that tenant.
    """
    is_sysadmin = user.global_role == GlobalRole.SYSADMIN

    if tenant_ref:
        tenant = _find_tenant(db, tenant_ref.strip())
        if not tenant:
            raise PermissionDeniedError("Tenant not accessible")
        if not tenant.active:
            raise PermissionDeniedError("Tenant is inactive")

        member = get_member(db, tenant.id, user.id)
        if not member and not is_sysadmin:
            raise PermissionDeniedError("Tenant not accessible")
        return tenant, member.role if member else None

    tenants = list_user_tenants(db, user)
    if len(tenants) == 1:
        return tenants[0]
    raise ValidationError("Tenant context required (set X-Tenant-Id)")


def ensure_cabinet_settings(db: Session, tenant_id: str, name: Optional[str] = None) -> CabinetSettings:
    settings = db.query(CabinetSettings).filter(CabinetSettings.tenant_id == tenant_id).first()
    if not settings:
        settings = CabinetSettings(tenant_id=tenant_id, name=name or "Cabinet")
        db.add(settings)
        db.flush()
    return settings


def create_tenant(db: Session, name: str, slug: Optional[str] = None, owner_id: Optional[str] = None,
                  logo_url: Optional[str] = None) -> Tenant:
    slug = slugify(slug or name)
    if db.query(Tenant).filter(Tenant.slug == slug).first():
        raise ConflictError(f"Tenant slug '{slug}' already exists")

    tenant = Tenant(name=name, slug=slug, logo_url=logo_url)
    db.add(tenant)
    db.flush()
    ensure_cabinet_settings(db, tenant.id, name=name)

    if owner_id:
        add_member(db, tenant.id, owner_id, TenantRole.OWNER)
    return tenant


def add_member(db: Session, tenant_id: str, user_id: str, role: TenantRole) -> TenantMember:
    member = get_member(db, tenant_id, user_id)
    if member:
        raise ConflictError("User is already a member of this tenant")
    member = TenantMember(tenant_id=tenant_id, user_id=user_id, role=role)
    db.add(member)
    db.flush()
    return member


def tenant_user_ids(db: Session, tenant_id: str, roles: Optional[List[TenantRole]] = None) -> List[str]:
    query = db.query(TenantMember.user_id).filter(TenantMember.tenant_id == tenant_id)
    if roles:
        query = query.filter(TenantMember.role.in_(roles))
    return [row[0] for row in query.all()]
