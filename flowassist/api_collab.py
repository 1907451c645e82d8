"""
Collaboration API Endpoints
===========================

FastAPI router for internal messages, to-dos and their attachments, and
the personal agenda.
"""

import io
import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Depends, UploadFile, File, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .auth import AuthContext, Permission
from . import collab
from .db.models import TodoStatus
from .db.session import get_db_session
from .deps import require_permission
from .errors import BusinessRuleError
from .storage import remove_stored_files, safe_filename

logger = logging.getLogger(__name__)

router = APIRouter(tags=["collaboration"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class MessageCreate(BaseModel):
    """Direct message (recipient set) or broadcast (recipient omitted)"""
    content: str = Field(..., min_length=1)
    recipient_id: Optional[str] = None
    reply_to: Optional[str] = None


class TodoCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    deadline: date
    assigned_to: Optional[str] = None


class TodoUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    deadline: Optional[date] = None
    assigned_to: Optional[str] = None


class TodoStatusUpdate(BaseModel):
    status: TodoStatus
    blocked_reason: Optional[str] = None


class TodoResponse(BaseModel):
    id: str
    title: str
    deadline: date
    status: str
    blocked_reason: Optional[str]
    assigned_to: str
    created_by: Optional[str]
    overdue: bool
    created_at: datetime
    attachment_count: int = 0


class TodoAttachmentResponse(BaseModel):
    id: str
    todo_id: str
    file_name: str
    file_size: int
    mime_type: Optional[str]
    created_by: Optional[str]
    created_at: datetime


class AgendaCreate(BaseModel):
    entry_date: date
    note: str = Field(..., min_length=1)


class AgendaUpdate(BaseModel):
    entry_date: Optional[date] = None
    note: Optional[str] = None


class AgendaResponse(BaseModel):
    id: str
    entry_date: date
    note: str
    reminder_sent: bool


def _todo_out(todo, today: Optional[date] = None, attachment_count: int = 0) -> TodoResponse:
    return TodoResponse(
        id=todo.id,
        title=todo.title,
        deadline=todo.deadline,
        status=todo.status.value,
        blocked_reason=todo.blocked_reason,
        assigned_to=todo.assigned_to,
        created_by=todo.created_by,
        overdue=collab.is_overdue(todo, today),
        created_at=todo.created_at,
        attachment_count=attachment_count,
    )


def _attachment_out(attachment) -> TodoAttachmentResponse:
    return TodoAttachmentResponse(
        id=attachment.id,
        todo_id=attachment.todo_id,
        file_name=attachment.file_name,
        file_size=attachment.file_size,
        mime_type=attachment.mime_type,
        created_by=attachment.created_by,
        created_at=attachment.created_at,
    )


def _agenda_out(entry) -> AgendaResponse:
    return AgendaResponse(id=entry.id, entry_date=entry.entry_date, note=entry.note,
                          reminder_sent=entry.reminder_sent)


# =============================================================================
# MESSAGES
# =============================================================================

@router.get("/messages")
async def list_messages(auth: AuthContext = Depends(require_permission(Permission.MESSAGE_USE))):
    """Visible threads, newest first, with replies nested."""
    try:
        with get_db_session() as db:
            return collab.list_messages(db, auth)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to list messages")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/messages")
async def send_message(
    body: MessageCreate,
    auth: AuthContext = Depends(require_permission(Permission.MESSAGE_USE))
):
    try:
        with get_db_session() as db:
            message = collab.send_message(db, auth, body.content, body.recipient_id, body.reply_to)
            return collab.message_to_dict(message, {auth.user_id: auth.name or auth.email})
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to send message")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/messages/unread-count")
async def get_unread_count(auth: AuthContext = Depends(require_permission(Permission.MESSAGE_USE))):
    with get_db_session() as db:
        return {"unread": collab.unread_count(db, auth)}


@router.post("/messages/{message_id}/read")
async def mark_message_read(
    message_id: str,
    auth: AuthContext = Depends(require_permission(Permission.MESSAGE_USE))
):
    with get_db_session() as db:
        collab.mark_read(db, auth, message_id)
    return {"message": "Marked as read", "id": message_id}


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    auth: AuthContext = Depends(require_permission(Permission.MESSAGE_USE))
):
    with get_db_session() as db:
        collab.delete_message(db, auth, message_id)
    return {"message": "Message deleted", "id": message_id}


# =============================================================================
# TODOS
# =============================================================================

@router.get("/todos", response_model=List[TodoResponse])
async def list_todos(
    assigned_to: Optional[str] = Query(None),
    status: Optional[TodoStatus] = Query(None),
    auth: AuthContext = Depends(require_permission(Permission.TODO_OWN))
):
    """
    To-dos ordered by deadline. Collaborators only see their own.
    """
    try:
        with get_db_session() as db:
            today = date.today()
            todos = collab.list_todos(db, auth, assigned_to, status)
            counts = collab.attachment_counts(db, [t.id for t in todos])
            return [_todo_out(t, today, counts.get(t.id, 0)) for t in todos]
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to list todos")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/todos", response_model=TodoResponse)
async def create_todo(
    body: TodoCreate,
    auth: AuthContext = Depends(require_permission(Permission.TODO_OWN))
):
    with get_db_session() as db:
        return _todo_out(collab.create_todo(db, auth, body.title, body.deadline, body.assigned_to))


@router.patch("/todos/{todo_id}", response_model=TodoResponse)
async def update_todo(
    todo_id: str,
    body: TodoUpdate,
    auth: AuthContext = Depends(require_permission(Permission.TODO_OWN))
):
    with get_db_session() as db:
        return _todo_out(collab.update_todo(db, auth, todo_id, body.title, body.deadline, body.assigned_to))


@router.post("/todos/{todo_id}/status", response_model=TodoResponse)
async def set_todo_status(
    todo_id: str,
    body: TodoStatusUpdate,
    auth: AuthContext = Depends(require_permission(Permission.TODO_OWN))
):
    """Change status; blocking requires a reason (max 128 characters)."""
    with get_db_session() as db:
        return _todo_out(collab.set_todo_status(db, auth, todo_id, body.status, body.blocked_reason))


@router.delete("/todos/{todo_id}")
async def delete_todo(
    todo_id: str,
    auth: AuthContext = Depends(require_permission(Permission.TODO_OWN))
):
    with get_db_session() as db:
        collab.delete_todo(db, auth, todo_id)
    return {"message": "To-do deleted", "id": todo_id}


@router.get("/todos/{todo_id}/attachments", response_model=List[TodoAttachmentResponse])
async def list_todo_attachments(
    todo_id: str,
    auth: AuthContext = Depends(require_permission(Permission.TODO_OWN))
):
    with get_db_session() as db:
        return [_attachment_out(a) for a in collab.list_todo_attachments(db, auth, todo_id)]


@router.post("/todos/{todo_id}/attachments", response_model=TodoAttachmentResponse)
async def upload_todo_attachment(
    todo_id: str,
    file: UploadFile = File(...),
    auth: AuthContext = Depends(require_permission(Permission.TODO_OWN))
):
    """
    Attach a file to a to-do. All attachments of a to-do total at most 15 MB.
    """
    stored_key = None
    try:
        data = await file.read()
        with get_db_session() as db:
            attachment = collab.add_todo_attachment(
                db, auth, todo_id,
                file_name=file.filename or "piece-jointe",
                data=data,
                mime_type=file.content_type,
            )
            stored_key = attachment.storage_key
            response = _attachment_out(attachment)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to upload todo attachment")
        if stored_key:
            remove_stored_files([stored_key])
        raise HTTPException(status_code=500, detail=str(e))
    return response


@router.get("/todos/{todo_id}/attachments/{attachment_id}")
async def download_todo_attachment(
    todo_id: str,
    attachment_id: str,
    auth: AuthContext = Depends(require_permission(Permission.TODO_OWN))
):
    with get_db_session() as db:
        attachment, data = collab.read_todo_attachment(db, auth, todo_id, attachment_id)
        filename = safe_filename(attachment.file_name)
        media_type = attachment.mime_type or "application/octet-stream"

    return StreamingResponse(
        io.BytesIO(data),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.delete("/todos/{todo_id}/attachments/{attachment_id}")
async def delete_todo_attachment(
    todo_id: str,
    attachment_id: str,
    auth: AuthContext = Depends(require_permission(Permission.TODO_OWN))
):
    with get_db_session() as db:
        collab.delete_todo_attachment(db, auth, todo_id, attachment_id)
    return {"message": "Attachment deleted", "id": attachment_id}


# =============================================================================
# AGENDA
# =============================================================================

@router.get("/agenda", response_model=List[AgendaResponse])
async def list_agenda(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    auth: AuthContext = Depends(require_permission(Permission.AGENDA_USE))
):
    with get_db_session() as db:
        return [_agenda_out(e) for e in collab.list_agenda(db, auth, date_from, date_to)]


@router.post("/agenda", response_model=AgendaResponse)
async def create_agenda_entry(
    body: AgendaCreate,
    auth: AuthContext = Depends(require_permission(Permission.AGENDA_USE))
):
    with get_db_session() as db:
        return _agenda_out(collab.create_agenda_entry(db, auth, body.entry_date, body.note))


@router.patch("/agenda/{entry_id}", response_model=AgendaResponse)
async def update_agenda_entry(
    entry_id: str,
    body: AgendaUpdate,
    auth: AuthContext = Depends(require_permission(Permission.AGENDA_USE))
):
    with get_db_session() as db:
        return _agenda_out(collab.update_agenda_entry(db, auth, entry_id, body.entry_date, body.note))


@router.delete("/agenda/{entry_id}")
async def delete_agenda_entry(
    entry_id: str,
    auth: AuthContext = Depends(require_permission(Permission.AGENDA_USE))
):
    with get_db_session() as db:
        collab.delete_agenda_entry(db, auth, entry_id)
    return {"message": "Agenda entry deleted", "id": entry_id}
