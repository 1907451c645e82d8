"""
Audit trail helpers.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .db.models import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    db: Session,
    tenant_id: Optional[str],
    user_id: Optional[str],
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Add an audit row to the session (committed with the caller's transaction)."""
    entry = AuditLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
    )
    db.add(entry)
    logger.info(f"Audit {action} {entity_type}:{entity_id} by {user_id or 'system'}")
    return entry


def list_audit(db: Session, tenant_id: str, limit: int = 100,
               entity_type: Optional[str] = None, entity_id: Optional[str] = None) -> List[AuditLog]:
    query = db.query(AuditLog).filter(AuditLog.tenant_id == tenant_id)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    return query.order_by(AuditLog.created_at.desc()).limit(limit).all()
