"""
Clients & Matters
=================

Client and matter management, staffing (assignments) and client portal
links. Every query is scoped to the caller's tenant; rows from another
tenant are reported as missing.
"""

import logging
from datetime import date
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from .audit import record_audit
from .auth import AuthContext
from .billing import ALLOWED_VAT_RATES
from .db.models import (
    Assignment, BillingType, Client, ClientUser, ClientUserMatter, Document, Matter, MatterStatus, TenantRole,
)
from .errors import ConflictError, NotFoundError, ValidationError
from .storage import StorageBackend, remove_stored_files
from .tenants import ensure_cabinet_settings, get_member

logger = logging.getLogger(__name__)

CLIENT_CODE_PREFIX = "CL"
MATTER_CODE_PREFIX = "DOS"

CLIENT_FIELDS = ("name", "address", "billing_email", "vat_number", "contact_name", "contact_phone", "active")
MATTER_FIELDS = (
    "label", "status", "rate_cents", "vat_rate", "billing_type", "flat_fee_cents",
    "max_amount_ht_cents", "intervention_nature", "client_sector",
)


def next_code(prefix: str, existing_codes: Iterable[str]) -> str:
    """CL0001 style code: count + 1, skipping codes already taken."""
    taken = set(existing_codes)
    number = len(taken) + 1
    while f"{prefix}{number:04d}" in taken:
        number += 1
    return f"{prefix}{number:04d}"


# =============================================================================
# CLIENTS
# =============================================================================

def get_client(db: Session, auth: AuthContext, client_id: str) -> Client:
    client = db.query(Client).filter(Client.id == client_id, Client.tenant_id == auth.tenant_id).first()
    if not client or (auth.is_client and client.id not in auth.client_ids):
        raise NotFoundError("Client not found")
    return client


def list_clients(db: Session, auth: AuthContext, include_inactive: bool = False) -> List[Client]:
    query = db.query(Client).filter(Client.tenant_id == auth.tenant_id)
    if auth.is_client:
        query = query.filter(Client.id.in_(auth.client_ids or [""]))
    if not include_inactive:
        query = query.filter(Client.active == True)
    return query.order_by(Client.code.asc()).all()


def create_client(db: Session, auth: AuthContext, name: str, code: Optional[str] = None, **fields) -> Client:
    existing = [c for (c,) in db.query(Client.code).filter(Client.tenant_id == auth.tenant_id).all()]
    if code:
        code = code.strip().upper()
        if code in existing:
            raise ConflictError(f"Client code {code} already exists")
    else:
        code = next_code(CLIENT_CODE_PREFIX, existing)

    client = Client(tenant_id=auth.tenant_id, code=code, name=name.strip(),
                    **{k: v for k, v in fields.items() if k in CLIENT_FIELDS})
    db.add(client)
    db.flush()
    record_audit(db, auth.tenant_id, auth.user_id, "create_client", "client", client.id, {"code": code})
    return client


def update_client(db: Session, auth: AuthContext, client_id: str, **changes) -> Client:
    client = get_client(db, auth, client_id)
    for key, value in changes.items():
        if key in CLIENT_FIELDS and value is not None:
            setattr(client, key, value)
    db.flush()
    return client


def delete_client(db: Session, auth: AuthContext, client_id: str,
                  storage: Optional[StorageBackend] = None) -> bool:
    """
    Delete a client, or deactivate it when matters still reference it.
    Returns True if deleted. Files of the client's documents are removed
    from storage along with the rows.
    """
    client = get_client(db, auth, client_id)
    has_matters = db.query(Matter).filter(Matter.client_id == client.id).first() is not None
    if has_matters:
        client.active = False
        record_audit(db, auth.tenant_id, auth.user_id, "deactivate_client", "client", client.id)
        db.flush()
        return False

    keys = [k for (k,) in db.query(Document.storage_key).filter(Document.client_id == client.id).all()]
    record_audit(db, auth.tenant_id, auth.user_id, "delete_client", "client", client.id, {"code": client.code})
    db.delete(client)
    db.flush()
    if keys:
        logger.info(f"Removing {len(keys)} stored file(s) of deleted client {client.code}")
        remove_stored_files(keys, storage)
    return True


# =============================================================================
# MATTERS
# =============================================================================

def client_matter_scope(db: Session, auth: AuthContext) -> Optional[Set[str]]:
    """Matters a portal user is narrowed to, or None when not narrowed."""
    if not auth.is_client:
        return None
    rows = db.query(ClientUserMatter.matter_id).filter(
        ClientUserMatter.tenant_id == auth.tenant_id,
        ClientUserMatter.user_id == auth.user_id,
    ).all()
    return {r[0] for r in rows} or None


def _assigned_matter_ids(db: Session, auth: AuthContext) -> Set[str]:
    rows = db.query(Assignment.matter_id).filter(
        Assignment.tenant_id == auth.tenant_id,
        Assignment.user_id == auth.user_id,
    ).all()
    return {r[0] for r in rows}


def _can_see_matter(db: Session, auth: AuthContext, matter: Matter) -> bool:
    if auth.can_manage:
        return True
    if auth.is_client:
        if matter.client_id not in auth.client_ids:
            return False
        scope = client_matter_scope(db, auth)
        return scope is None or matter.id in scope
    return matter.id in _assigned_matter_ids(db, auth)


def get_matter(db: Session, auth: AuthContext, matter_id: str) -> Matter:
    matter = db.query(Matter).filter(Matter.id == matter_id, Matter.tenant_id == auth.tenant_id).first()
    if not matter or not _can_see_matter(db, auth, matter):
        raise NotFoundError("Matter not found")
    return matter


def list_matters(db: Session, auth: AuthContext, client_id: Optional[str] = None,
                 status: Optional[MatterStatus] = None) -> List[Matter]:
    query = db.query(Matter).filter(Matter.tenant_id == auth.tenant_id)
    if client_id:
        query = query.filter(Matter.client_id == client_id)
    if status:
        query = query.filter(Matter.status == status)

    if auth.is_client:
        query = query.filter(Matter.client_id.in_(auth.client_ids or [""]))
        scope = client_matter_scope(db, auth)
        if scope is not None:
            query = query.filter(Matter.id.in_(scope))
    elif not auth.can_manage:
        query = query.filter(Matter.id.in_(_assigned_matter_ids(db, auth) or {""}))

    return query.order_by(Matter.code.asc()).all()


def _validate_matter_fields(vat_rate: Optional[int], billing_type: BillingType, flat_fee_cents: Optional[int],
                            rate_cents: Optional[int], max_amount_ht_cents: Optional[int]) -> None:
    if vat_rate is not None and vat_rate not in ALLOWED_VAT_RATES:
        raise ValidationError("vat_rate must be 0 or 20")
    if billing_type == BillingType.FLAT_FEE and not flat_fee_cents:
        raise ValidationError("flat_fee_cents is required for flat fee matters")
    for name, value in (("flat_fee_cents", flat_fee_cents), ("rate_cents", rate_cents),
                        ("max_amount_ht_cents", max_amount_ht_cents)):
        if value is not None and value < 0:
            raise ValidationError(f"{name} must be positive")


def create_matter(db: Session, auth: AuthContext, client_id: str, label: str, code: Optional[str] = None,
                  billing_type: BillingType = BillingType.TIME_BASED, vat_rate: Optional[int] = None,
                  **fields) -> Matter:
    client = get_client(db, auth, client_id)
    if not client.active:
        raise ConflictError("Client is inactive")

    if vat_rate is None:
        vat_rate = ensure_cabinet_settings(db, auth.tenant_id).vat_default
    _validate_matter_fields(vat_rate, billing_type, fields.get("flat_fee_cents"),
                            fields.get("rate_cents"), fields.get("max_amount_ht_cents"))

    existing = [c for (c,) in db.query(Matter.code).filter(Matter.tenant_id == auth.tenant_id).all()]
    if code:
        code = code.strip().upper()
        if code in existing:
            raise ConflictError(f"Matter code {code} already exists")
    else:
        code = next_code(MATTER_CODE_PREFIX, existing)

    matter = Matter(
        tenant_id=auth.tenant_id,
        client_id=client.id,
        code=code,
        label=label.strip(),
        billing_type=billing_type,
        vat_rate=vat_rate,
        **{k: v for k, v in fields.items() if k in MATTER_FIELDS},
    )
    db.add(matter)
    db.flush()
    record_audit(db, auth.tenant_id, auth.user_id, "create_matter", "matter", matter.id, {"code": code})
    return matter


def update_matter(db: Session, auth: AuthContext, matter_id: str, **changes) -> Matter:
    matter = get_matter(db, auth, matter_id)
    merged: Dict = {k: getattr(matter, k) for k in MATTER_FIELDS}
    merged.update({k: v for k, v in changes.items() if k in MATTER_FIELDS and v is not None})
    _validate_matter_fields(merged["vat_rate"], merged["billing_type"], merged["flat_fee_cents"],
                            merged["rate_cents"], merged["max_amount_ht_cents"])

    for key, value in merged.items():
        setattr(matter, key, value)
    db.flush()
    return matter


# =============================================================================
# ASSIGNMENTS
# =============================================================================

def create_assignment(db: Session, auth: AuthContext, matter_id: str, user_id: str,
                      start_date: date, end_date: Optional[date] = None) -> Assignment:
    matter = get_matter(db, auth, matter_id)
    if end_date and end_date < start_date:
        raise ValidationError("end_date must be on or after start_date")

    member = get_member(db, auth.tenant_id, user_id)
    if not member or member.role == TenantRole.CLIENT:
        raise ValidationError("Only cabinet staff can be assigned to a matter")

    assignment = Assignment(tenant_id=auth.tenant_id, matter_id=matter.id, user_id=user_id,
                            start_date=start_date, end_date=end_date)
    db.add(assignment)
    db.flush()
    return assignment


def list_assignments(db: Session, auth: AuthContext, matter_id: Optional[str] = None,
                     user_id: Optional[str] = None) -> List[Assignment]:
    query = db.query(Assignment).filter(Assignment.tenant_id == auth.tenant_id)
    if not auth.can_manage:
        query = query.filter(Assignment.user_id == auth.user_id)
    elif user_id:
        query = query.filter(Assignment.user_id == user_id)
    if matter_id:
        query = query.filter(Assignment.matter_id == matter_id)
    return query.order_by(Assignment.start_date.desc()).all()


def delete_assignment(db: Session, auth: AuthContext, assignment_id: str) -> None:
    assignment = db.query(Assignment).filter(
        Assignment.id == assignment_id,
        Assignment.tenant_id == auth.tenant_id,
    ).first()
    if not assignment:
        raise NotFoundError("Assignment not found")
    db.delete(assignment)
    db.flush()


# =============================================================================
# CLIENT PORTAL USERS
# =============================================================================

def link_client_user(db: Session, auth: AuthContext, client_id: str, user_id: str,
                     matter_ids: Optional[List[str]] = None) -> ClientUser:
    """Attach a portal user to a client, optionally narrowed to some of its matters."""
    client = get_client(db, auth, client_id)
    member = get_member(db, auth.tenant_id, user_id)
    if not member or member.role != TenantRole.CLIENT:
        raise ValidationError("User must be a client member of this cabinet")

    existing = db.query(ClientUser).filter(ClientUser.client_id == client.id, ClientUser.user_id == user_id).first()
    if existing:
        raise ConflictError("User is already linked to this client")

    link = ClientUser(tenant_id=auth.tenant_id, client_id=client.id, user_id=user_id)
    db.add(link)

    for matter_id in matter_ids or []:
        matter = get_matter(db, auth, matter_id)
        if matter.client_id != client.id:
            raise ValidationError("Matter does not belong to this client")
        db.add(ClientUserMatter(tenant_id=auth.tenant_id, user_id=user_id, matter_id=matter.id))

    db.flush()
    logger.info(f"Portal user {user_id} linked to client {client.code}")
    return link


def list_client_users(db: Session, auth: AuthContext, client_id: Optional[str] = None) -> List[ClientUser]:
    query = db.query(ClientUser).filter(ClientUser.tenant_id == auth.tenant_id)
    if client_id:
        query = query.filter(ClientUser.client_id == client_id)
    return query.all()


def unlink_client_user(db: Session, auth: AuthContext, link_id: str) -> None:
    link = db.query(ClientUser).filter(ClientUser.id == link_id, ClientUser.tenant_id == auth.tenant_id).first()
    if not link:
        raise NotFoundError("Client user link not found")

    client_matter_ids = [m for (m,) in db.query(Matter.id).filter(Matter.client_id == link.client_id).all()]
    if client_matter_ids:
        db.query(ClientUserMatter).filter(
            ClientUserMatter.user_id == link.user_id,
            ClientUserMatter.matter_id.in_(client_matter_ids),
        ).delete(synchronize_session=False)
    db.delete(link)
    db.flush()
