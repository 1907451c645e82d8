"""
Job Queue Package
=================

Background job processing with Redis Queue (RQ).
"""

from .queue import enqueue_job
from .tasks import (
    task_budget_alert,
    task_document_notification,
    task_agenda_reminders,
)

__all__ = [
    # Queue management
    "enqueue_job",
    # Tasks
    "task_budget_alert",
    "task_document_notification",
    "task_agenda_reminders",
]
