"""
Collaboration
=============

Internal messaging, to-dos (with file attachments) and the personal agenda.

Messages with no recipient are broadcasts to the whole cabinet; read
receipts for broadcasts live in `message_reads`, one row per reader.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from .auth import AuthContext
from .db.models import AgendaEntry, Message, MessageRead, TenantRole, Todo, TodoAttachment, TodoStatus, User
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .storage import StorageBackend, get_storage, remove_stored_files, todo_attachment_key
from .tenants import get_member

logger = logging.getLogger(__name__)

BLOCKED_REASON_MAX_LENGTH = 128
TODO_ATTACHMENTS_MAX_BYTES = 15 * 1024 * 1024


# =============================================================================
# MESSAGES
# =============================================================================

def _get_message(db: Session, auth: AuthContext, message_id: str, visible_only: bool = False) -> Message:
    query = db.query(Message).filter(Message.id == message_id, Message.tenant_id == auth.tenant_id)
    if visible_only:
        query = query.filter(_visible_filter(auth))
    message = query.first()
    if not message:
        raise NotFoundError("Message not found")
    return message


def send_message(db: Session, auth: AuthContext, content: str, recipient_id: Optional[str] = None,
                 reply_to: Optional[str] = None) -> Message:
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content is required")

    if recipient_id:
        if not get_member(db, auth.tenant_id, recipient_id):
            raise ValidationError("Recipient is not a member of this cabinet")
    if reply_to:
        # only threads the sender can read
        _get_message(db, auth, reply_to, visible_only=True)

    message = Message(
        tenant_id=auth.tenant_id,
        sender_id=auth.user_id,
        recipient_id=recipient_id,
        content=content,
        reply_to=reply_to,
    )
    db.add(message)
    db.flush()
    return message


def _visible_filter(auth: AuthContext):
    return (
        (Message.sender_id == auth.user_id)
        | (Message.recipient_id == auth.user_id)
        | (Message.recipient_id == None)
    )


def message_to_dict(message: Message, names: Dict[str, str], replies: Optional[List[Dict]] = None) -> Dict:
    data = {
        "id": message.id,
        "sender_id": message.sender_id,
        "sender_name": names.get(message.sender_id) or "",
        "recipient_id": message.recipient_id,
        "content": message.content,
        "read": message.read,
        "reply_to": message.reply_to,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }
    if replies is not None:
        data["replies"] = replies
    return data


def list_messages(db: Session, auth: AuthContext) -> List[Dict]:
    """Top-level messages visible to the caller, newest first, with their replies nested."""
    top_level = (
        db.query(Message)
        .filter(Message.tenant_id == auth.tenant_id, Message.reply_to == None, _visible_filter(auth))
        .order_by(Message.created_at.desc())
        .all()
    )
    ids = [m.id for m in top_level]
    replies = (
        db.query(Message)
        .filter(Message.tenant_id == auth.tenant_id, Message.reply_to.in_(ids))
        .order_by(Message.created_at.asc())
        .all()
    ) if ids else []

    sender_ids = {m.sender_id for m in top_level} | {r.sender_id for r in replies}
    names = {
        u.id: u.name or u.email
        for u in db.query(User).filter(User.id.in_(sender_ids)).all()
    } if sender_ids else {}

    by_parent: Dict[str, List[Dict]] = {}
    for reply in replies:
        by_parent.setdefault(reply.reply_to, []).append(message_to_dict(reply, names))

    return [message_to_dict(m, names, by_parent.get(m.id, [])) for m in top_level]


def unread_count(db: Session, auth: AuthContext) -> int:
    direct = db.query(Message).filter(
        Message.tenant_id == auth.tenant_id,
        Message.recipient_id == auth.user_id,
        Message.read == False,
        Message.reply_to == None,
    ).count()

    read_ids = db.query(MessageRead.message_id).filter(MessageRead.user_id == auth.user_id)
    broadcasts = db.query(Message).filter(
        Message.tenant_id == auth.tenant_id,
        Message.recipient_id == None,
        Message.reply_to == None,
        Message.sender_id != auth.user_id,
        ~Message.id.in_(read_ids),
    ).count()
    return direct + broadcasts


def mark_read(db: Session, auth: AuthContext, message_id: str) -> None:
    message = _get_message(db, auth, message_id)
    if message.recipient_id is None:
        exists = db.query(MessageRead).filter(
            MessageRead.message_id == message.id,
            MessageRead.user_id == auth.user_id,
        ).first()
        if not exists:
            db.add(MessageRead(message_id=message.id, user_id=auth.user_id))
    elif message.recipient_id == auth.user_id:
        message.read = True
    else:
        raise NotFoundError("Message not found")
    db.flush()


def delete_message(db: Session, auth: AuthContext, message_id: str) -> None:
    message = _get_message(db, auth, message_id)
    if message.sender_id != auth.user_id and not auth.is_owner:
        raise PermissionDeniedError("Only the sender or the owner can delete a message")
    db.query(Message).filter(Message.reply_to == message.id).delete(synchronize_session=False)
    db.delete(message)
    db.flush()


# =============================================================================
# TODOS
# =============================================================================

def is_overdue(todo: Todo, today: Optional[date] = None) -> bool:
    return todo.status != TodoStatus.DONE and todo.deadline < (today or date.today())


def _get_todo(db: Session, auth: AuthContext, todo_id: str) -> Todo:
    todo = db.query(Todo).filter(Todo.id == todo_id, Todo.tenant_id == auth.tenant_id).first()
    if not todo or (not auth.can_manage and auth.user_id not in (todo.assigned_to, todo.created_by)):
        raise NotFoundError("Todo not found")
    return todo


def _check_assignee(db: Session, auth: AuthContext, assigned_to: str) -> None:
    if not auth.can_manage and assigned_to != auth.user_id:
        raise PermissionDeniedError("Collaborators can only create to-dos for themselves")
    member = get_member(db, auth.tenant_id, assigned_to)
    if not member or member.role == TenantRole.CLIENT:
        raise ValidationError("Assignee is not a member of this cabinet")


def create_todo(db: Session, auth: AuthContext, title: str, deadline: date,
                assigned_to: Optional[str] = None) -> Todo:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    assigned_to = assigned_to or auth.user_id
    _check_assignee(db, auth, assigned_to)

    todo = Todo(tenant_id=auth.tenant_id, assigned_to=assigned_to, created_by=auth.user_id,
                title=title, deadline=deadline)
    db.add(todo)
    db.flush()
    return todo


def update_todo(db: Session, auth: AuthContext, todo_id: str, title: Optional[str] = None,
                deadline: Optional[date] = None, assigned_to: Optional[str] = None) -> Todo:
    todo = _get_todo(db, auth, todo_id)
    if title is not None:
        if not title.strip():
            raise ValidationError("Title is required")
        todo.title = title.strip()
    if deadline is not None:
        todo.deadline = deadline
    if assigned_to is not None and assigned_to != todo.assigned_to:
        _check_assignee(db, auth, assigned_to)
        todo.assigned_to = assigned_to
    db.flush()
    return todo


def set_todo_status(db: Session, auth: AuthContext, todo_id: str, status: TodoStatus,
                    blocked_reason: Optional[str] = None) -> Todo:
    """Blocking needs a short reason; any other status clears it."""
    todo = _get_todo(db, auth, todo_id)
    if not auth.can_manage and todo.assigned_to != auth.user_id:
        raise PermissionDeniedError("Only the assignee can change the status")

    status = TodoStatus(status)
    if status == TodoStatus.BLOCKED:
        reason = (blocked_reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to block a to-do")
        if len(reason) > BLOCKED_REASON_MAX_LENGTH:
            raise ValidationError(f"Blocked reason must be at most {BLOCKED_REASON_MAX_LENGTH} characters")
        todo.blocked_reason = reason
    else:
        todo.blocked_reason = None
    todo.status = status
    db.flush()
    return todo


def delete_todo(db: Session, auth: AuthContext, todo_id: str,
                storage: Optional[StorageBackend] = None) -> None:
    todo = _get_todo(db, auth, todo_id)
    if not auth.can_manage and todo.created_by != auth.user_id:
        raise PermissionDeniedError("Only the creator can delete this to-do")
    keys = [k for (k,) in db.query(TodoAttachment.storage_key).filter(TodoAttachment.todo_id == todo.id).all()]
    db.delete(todo)
    db.flush()
    if keys:
        remove_stored_files(keys, storage)


def list_todos(db: Session, auth: AuthContext, assigned_to: Optional[str] = None,
               status: Optional[TodoStatus] = None) -> List[Todo]:
    query = db.query(Todo).filter(Todo.tenant_id == auth.tenant_id)
    if not auth.can_manage:
        query = query.filter(Todo.assigned_to == auth.user_id)
    elif assigned_to:
        query = query.filter(Todo.assigned_to == assigned_to)
    if status:
        query = query.filter(Todo.status == TodoStatus(status))
    return query.order_by(Todo.deadline.asc(), Todo.created_at.asc()).all()


def _attachments_size(db: Session, todo_id: str) -> int:
    total = db.query(func.sum(TodoAttachment.file_size)).filter(TodoAttachment.todo_id == todo_id).scalar()
    return int(total or 0)


def add_todo_attachment(db: Session, auth: AuthContext, todo_id: str, file_name: str, data: bytes,
                        mime_type: Optional[str] = None,
                        storage: Optional[StorageBackend] = None) -> TodoAttachment:
    """Store a file on a to-do the caller can see, within the per-to-do total."""
    todo = _get_todo(db, auth, todo_id)
    if not data:
        raise ValidationError("File is empty")
    if _attachments_size(db, todo.id) + len(data) > TODO_ATTACHMENTS_MAX_BYTES:
        raise ValidationError(
            f"Attachments of a to-do are limited to {TODO_ATTACHMENTS_MAX_BYTES // (1024 * 1024)} MB in total"
        )

    storage = storage or get_storage()
    key = todo_attachment_key(auth.tenant_id, todo.id, file_name)
    storage.put(key, data, content_type=mime_type)
    try:
        attachment = TodoAttachment(
            tenant_id=auth.tenant_id,
            todo_id=todo.id,
            file_name=file_name,
            storage_key=key,
            file_size=len(data),
            mime_type=mime_type,
            created_by=auth.user_id,
        )
        db.add(attachment)
        db.flush()
    except Exception:
        logger.exception(f"Attachment insert failed, removing stored file {key}")
        storage.delete(key)
        raise
    return attachment


def list_todo_attachments(db: Session, auth: AuthContext, todo_id: str) -> List[TodoAttachment]:
    todo = _get_todo(db, auth, todo_id)
    return (
        db.query(TodoAttachment)
        .filter(TodoAttachment.todo_id == todo.id)
        .order_by(TodoAttachment.created_at.asc())
        .all()
    )


def attachment_counts(db: Session, todo_ids: List[str]) -> Dict[str, int]:
    if not todo_ids:
        return {}
    rows = (
        db.query(TodoAttachment.todo_id, func.count(TodoAttachment.id))
        .filter(TodoAttachment.todo_id.in_(todo_ids))
        .group_by(TodoAttachment.todo_id)
        .all()
    )
    return {todo_id: count for todo_id, count in rows}


def get_todo_attachment(db: Session, auth: AuthContext, todo_id: str, attachment_id: str) -> TodoAttachment:
    todo = _get_todo(db, auth, todo_id)
    attachment = db.query(TodoAttachment).filter(
        TodoAttachment.id == attachment_id,
        TodoAttachment.todo_id == todo.id,
    ).first()
    if not attachment:
        raise NotFoundError("Attachment not found")
    return attachment


def read_todo_attachment(db: Session, auth: AuthContext, todo_id: str, attachment_id: str,
                         storage: Optional[StorageBackend] = None) -> Tuple[TodoAttachment, bytes]:
    attachment = get_todo_attachment(db, auth, todo_id, attachment_id)
    try:
        data = (storage or get_storage()).get(attachment.storage_key)
    except FileNotFoundError:
        logger.error(f"Stored file missing for attachment {attachment.id}: {attachment.storage_key}")
        raise NotFoundError("Attachment file not found")
    return attachment, data


def delete_todo_attachment(db: Session, auth: AuthContext, todo_id: str, attachment_id: str,
                           storage: Optional[StorageBackend] = None) -> None:
    attachment = get_todo_attachment(db, auth, todo_id, attachment_id)
    key = attachment.storage_key
    db.delete(attachment)
    db.flush()
    remove_stored_files([key], storage)


# =============================================================================
# AGENDA
# =============================================================================

def _get_agenda_entry(db: Session, auth: AuthContext, entry_id: str) -> AgendaEntry:
    entry = db.query(AgendaEntry).filter(
        AgendaEntry.id == entry_id,
        AgendaEntry.tenant_id == auth.tenant_id,
        AgendaEntry.user_id == auth.user_id,
    ).first()
    if not entry:
        raise NotFoundError("Agenda entry not found")
    return entry


def create_agenda_entry(db: Session, auth: AuthContext, entry_date: date, note: str) -> AgendaEntry:
    if not (note or "").strip():
        raise ValidationError("Note is required")
    entry = AgendaEntry(tenant_id=auth.tenant_id, user_id=auth.user_id, entry_date=entry_date, note=note.strip())
    db.add(entry)
    db.flush()
    return entry


def update_agenda_entry(db: Session, auth: AuthContext, entry_id: str, entry_date: Optional[date] = None,
                        note: Optional[str] = None) -> AgendaEntry:
    entry = _get_agenda_entry(db, auth, entry_id)
    if entry_date is not None and entry_date != entry.entry_date:
        entry.entry_date = entry_date
        entry.reminder_sent = False
    if note is not None:
        if not note.strip():
            raise ValidationError("Note is required")
        entry.note = note.strip()
    db.flush()
    return entry


def delete_agenda_entry(db: Session, auth: AuthContext, entry_id: str) -> None:
    db.delete(_get_agenda_entry(db, auth, entry_id))
    db.flush()


def list_agenda(db: Session, auth: AuthContext, date_from: Optional[date] = None,
                date_to: Optional[date] = None) -> List[AgendaEntry]:
    query = db.query(AgendaEntry).filter(
        AgendaEntry.tenant_id == auth.tenant_id,
        AgendaEntry.user_id == auth.user_id,
    )
    if date_from:
        query = query.filter(AgendaEntry.entry_date >= date_from)
    if date_to:
        query = query.filter(AgendaEntry.entry_date <= date_to)
    return query.order_by(AgendaEntry.entry_date.asc()).all()


def send_agenda_reminders(db: Session, today: Optional[date] = None) -> int:
    """E-mail every user about tomorrow's agenda entries. Returns the number sent."""
    from .email_utils import send_agenda_reminder_email

    tomorrow = (today or date.today()) + timedelta(days=1)
    entries = db.query(AgendaEntry).filter(
        AgendaEntry.entry_date == tomorrow,
        AgendaEntry.reminder_sent == False,
    ).all()
    if not entries:
        return 0

    users = {u.id: u for u in db.query(User).filter(User.id.in_({e.user_id for e in entries})).all()}
    sent = 0
    for entry in entries:
        user = users.get(entry.user_id)
        if not user or not user.active:
            continue
        if send_agenda_reminder_email(user.email, entry.note, entry.entry_date.strftime("%d/%m/%Y"), user.name):
            entry.reminder_sent = True
            sent += 1
        else:
            logger.warning(f"Agenda reminder not sent to {user.email} for entry {entry.id}")
    db.flush()
    logger.info(f"Agenda reminders for {tomorrow.isoformat()}: {sent}/{len(entries)} sent")
    return sent
