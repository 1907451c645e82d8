"""
Job Tasks
=========

Background notifications: budget alerts, new-document e-mails and the
daily agenda reminders. Each task opens its own session.
"""

import logging
from datetime import date
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def task_budget_alert(tenant_id: str, matter_id: str) -> Dict[str, Any]:
    """Check a matter's budget after new time was logged."""
    from ..db.session import get_db_session
    from ..timesheet import check_budget_alert

    with get_db_session() as db:
        sent = check_budget_alert(db, tenant_id, matter_id)

    return {"matter_id": matter_id, "alert_sent": sent}


def task_document_notification(document_id: str) -> Dict[str, Any]:
    """E-mail the client's billing address about a newly uploaded document."""
    from ..db.session import get_db_session
    from ..db.models import Client, Document
    from ..documents import CATEGORY_LABELS
    from ..email_utils import send_document_notification_email

    with get_db_session() as db:
        document = db.query(Document).filter(Document.id == document_id).first()
        if not document:
            logger.warning(f"Document notification skipped: document {document_id} not found")
            return {"document_id": document_id, "status": "not_found"}

        client = db.query(Client).filter(Client.id == document.client_id).first()
        if not client or not client.billing_email:
            return {"document_id": document_id, "status": "no_recipient"}

        sent = send_document_notification_email(
            to_email=client.billing_email,
            client_name=client.name,
            file_name=document.file_name,
            category_label=CATEGORY_LABELS.get(document.category, document.category.value),
        )

    if not sent:
        logger.warning(f"Document notification failed for {document_id}")
    return {"document_id": document_id, "status": "sent" if sent else "failed"}


def task_agenda_reminders(run_date: Optional[str] = None) -> Dict[str, Any]:
    """Send reminders for tomorrow's agenda entries (run once a day)."""
    from ..collab import send_agenda_reminders
    from ..db.session import get_db_session
    from ..token_blacklist import remove_expired_blacklist_entries

    today = date.fromisoformat(run_date) if run_date else date.today()
    with get_db_session() as db:
        sent = send_agenda_reminders(db, today)

    with get_db_session() as db:
        purged = remove_expired_blacklist_entries(db)

    return {"date": today.isoformat(), "reminders_sent": sent, "blacklist_purged": purged}
