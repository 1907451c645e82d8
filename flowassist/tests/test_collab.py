"""
Collaboration Tests
===================

Messages (direct and broadcast), to-dos with attachments and the personal agenda.
"""

from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from flowassist.collab import is_overdue
from flowassist.db.models import TodoStatus
from flowassist.errors import PermissionDeniedError, ValidationError


@pytest.mark.parametrize("status,deadline,expected", [
    (TodoStatus.PENDING, date(2026, 3, 1), True),
    (TodoStatus.BLOCKED, date(2026, 3, 1), True),
    (TodoStatus.DONE, date(2026, 3, 1), False),
    (TodoStatus.PENDING, date(2026, 3, 2), False),
])
def test_is_overdue(status, deadline, expected):
    todo = SimpleNamespace(status=status, deadline=deadline)
    assert is_overdue(todo, today=date(2026, 3, 2)) is expected


# =============================================================================
# Messages
# =============================================================================

def _unread(client):
    return client.get("/api/v1/messages/unread-count").json()["unread"]


def test_broadcast_is_read_per_user(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])
    collab = api_client(seed["collab_id"], seed["tenant_id"])
    assistant = api_client(seed["assistant_id"], seed["tenant_id"])

    resp = owner.post("/api/v1/messages", json={"content": "Réunion lundi 9h"})
    assert resp.status_code == 200
    message_id = resp.json()["id"]
    assert resp.json()["recipient_id"] is None

    assert _unread(owner) == 0
    assert _unread(collab) == 1
    assert _unread(assistant) == 1

    assert collab.post(f"/api/v1/messages/{message_id}/read").status_code == 200
    assert _unread(collab) == 0
    assert _unread(assistant) == 1


def test_direct_message_and_reply(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])
    collab = api_client(seed["collab_id"], seed["tenant_id"])
    assistant = api_client(seed["assistant_id"], seed["tenant_id"])

    message_id = owner.post("/api/v1/messages", json={
        "content": "Peux-tu relire le bail ?", "recipient_id": seed["collab_id"],
    }).json()["id"]
    assert _unread(collab) == 1
    assert _unread(assistant) == 0
    assert assistant.get("/api/v1/messages").json() == []

    collab.post("/api/v1/messages", json={"content": "C'est fait", "reply_to": message_id})
    # the assistant cannot see this conversation, so cannot reply into it
    resp = assistant.post("/api/v1/messages", json={"content": "Moi aussi", "reply_to": message_id})
    assert resp.status_code == 404
    collab.post(f"/api/v1/messages/{message_id}/read")
    assert _unread(collab) == 0

    threads = owner.get("/api/v1/messages").json()
    assert len(threads) == 1
    assert [r["content"] for r in threads[0]["replies"]] == ["C'est fait"]
    assert threads[0]["replies"][0]["sender_name"] == "Collab Alpha"


def test_message_rules(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])
    collab = api_client(seed["collab_id"], seed["tenant_id"])

    resp = owner.post("/api/v1/messages", json={"content": "Hors cabinet", "recipient_id": seed["outsider_id"]})
    assert resp.status_code == 400

    message_id = owner.post("/api/v1/messages", json={"content": "Note"}).json()["id"]
    assert collab.delete(f"/api/v1/messages/{message_id}").status_code == 403
    assert owner.delete(f"/api/v1/messages/{message_id}").status_code == 200


# =============================================================================
# To-dos
# =============================================================================

def test_collaborator_todos_are_personal(seed, auth_for):
    from flowassist.collab import create_todo, list_todos
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        collab = auth_for(db, seed["collab_id"], seed["tenant_id"])
        owner = auth_for(db, seed["owner_id"], seed["tenant_id"])

        with pytest.raises(PermissionDeniedError):
            create_todo(db, collab, "Relancer client", date(2026, 5, 1), assigned_to=seed["owner_id"])
        with pytest.raises(ValidationError):
            create_todo(db, owner, "Portail", date(2026, 5, 1), assigned_to=seed["portal_id"])

        create_todo(db, collab, "Préparer audience", date(2026, 5, 2))
        create_todo(db, owner, "Relire conclusions", date(2026, 5, 1), assigned_to=seed["collab_id"])
        create_todo(db, owner, "Clôture annuelle", date(2026, 4, 30))

        assert [t.title for t in list_todos(db, collab)] == ["Relire conclusions", "Préparer audience"]
        assert len(list_todos(db, owner)) == 3


def test_blocking_requires_reason(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])
    collab = api_client(seed["collab_id"], seed["tenant_id"])

    past = (date.today() - timedelta(days=3)).isoformat()
    resp = owner.post("/api/v1/todos", json={
        "title": "Déposer la requête", "deadline": past, "assigned_to": seed["collab_id"],
    })
    assert resp.status_code == 200
    todo = resp.json()
    assert todo["overdue"] is True
    assert todo["status"] == "pending"

    url = f"/api/v1/todos/{todo['id']}/status"
    assert collab.post(url, json={"status": "blocked"}).status_code == 400
    assert collab.post(url, json={"status": "blocked", "blocked_reason": "x" * 129}).status_code == 400

    resp = collab.post(url, json={"status": "blocked", "blocked_reason": "Pièces manquantes"})
    assert resp.status_code == 200
    assert resp.json()["blocked_reason"] == "Pièces manquantes"

    resp = collab.post(url, json={"status": "done"})
    assert resp.json()["blocked_reason"] is None
    assert resp.json()["overdue"] is False

    # collaborators cannot delete what they did not create
    assert collab.delete(f"/api/v1/todos/{todo['id']}").status_code == 403
    assert owner.delete(f"/api/v1/todos/{todo['id']}").status_code == 200


def test_portal_users_have_no_todos(seed, api_client):
    portal = api_client(seed["portal_id"], seed["tenant_id"])
    assert portal.get("/api/v1/todos").status_code == 403


def test_todo_attachments(seed, api_client):
    from flowassist.storage import get_storage

    owner = api_client(seed["owner_id"], seed["tenant_id"])
    collab = api_client(seed["collab_id"], seed["tenant_id"])
    todo_id = collab.post("/api/v1/todos", json={"title": "Dossier pièces", "deadline": "2026-05-02"}).json()["id"]
    url = f"/api/v1/todos/{todo_id}/attachments"

    resp = collab.post(url, files={"file": ("Contrat bail.pdf", b"%PDF-bail", "application/pdf")})
    assert resp.status_code == 200
    attachment = resp.json()
    assert attachment["file_size"] == len(b"%PDF-bail")
    assert collab.post(url, files={"file": ("vide.txt", b"", "text/plain")}).status_code == 400

    assert [a["file_name"] for a in owner.get(url).json()] == ["Contrat bail.pdf"]
    assert collab.get("/api/v1/todos").json()[0]["attachment_count"] == 1

    resp = owner.get(f"{url}/{attachment['id']}")
    assert resp.status_code == 200
    assert resp.content == b"%PDF-bail"
    assert 'filename="Contrat_bail.pdf"' in resp.headers["content-disposition"]

    # another collaborator's to-do stays hidden
    private_id = owner.post("/api/v1/todos", json={"title": "Clôture", "deadline": "2026-05-02"}).json()["id"]
    assert collab.get(f"/api/v1/todos/{private_id}/attachments").status_code == 404
    assert api_client(seed["portal_id"], seed["tenant_id"]).get(url).status_code == 403

    assert collab.delete(f"{url}/{attachment['id']}").status_code == 200
    assert owner.get(url).json() == []
    assert [p for p in get_storage().root.rglob("*") if p.is_file()] == []


def test_todo_attachments_total_is_capped(seed, auth_for, monkeypatch):
    import flowassist.collab as collab_service
    from flowassist.collab import add_todo_attachment, create_todo, delete_todo
    from flowassist.db.models import TodoAttachment
    from flowassist.db.session import get_db_session
    from flowassist.storage import get_storage

    monkeypatch.setattr(collab_service, "TODO_ATTACHMENTS_MAX_BYTES", 10)

    with get_db_session() as db:
        owner = auth_for(db, seed["owner_id"], seed["tenant_id"])
        todo = create_todo(db, owner, "Pièces", date(2026, 5, 2))

        key = add_todo_attachment(db, owner, todo.id, "a.txt", b"12345678").storage_key
        with pytest.raises(ValidationError):
            add_todo_attachment(db, owner, todo.id, "b.txt", b"12345")
        add_todo_attachment(db, owner, todo.id, "c.txt", b"12")

        # deleting the to-do removes its files
        delete_todo(db, owner, todo.id)
        assert not get_storage().exists(key)
        assert db.query(TodoAttachment).count() == 0


# =============================================================================
# Agenda
# =============================================================================

def test_agenda_is_private(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])
    collab = api_client(seed["collab_id"], seed["tenant_id"])

    entry = owner.post("/api/v1/agenda", json={"entry_date": "2026-05-04", "note": "Audience TPI"}).json()
    assert entry["reminder_sent"] is False

    assert collab.get("/api/v1/agenda").json() == []
    assert collab.patch(f"/api/v1/agenda/{entry['id']}", json={"note": "x"}).status_code == 404

    resp = owner.get("/api/v1/agenda", params={"from": "2026-05-01", "to": "2026-05-31"})
    assert [e["note"] for e in resp.json()] == ["Audience TPI"]


def test_agenda_reminders_sent_once(seed, auth_for):
    from flowassist.collab import create_agenda_entry, send_agenda_reminders, update_agenda_entry
    from flowassist.db.session import get_db_session

    with get_db_session() as db:
        owner = auth_for(db, seed["owner_id"], seed["tenant_id"])
        entry = create_agenda_entry(db, owner, date(2026, 5, 4), "Audience TPI")
        create_agenda_entry(db, owner, date(2026, 5, 10), "Plus tard")

        assert send_agenda_reminders(db, today=date(2026, 5, 3)) == 1
        assert entry.reminder_sent is True
        assert send_agenda_reminders(db, today=date(2026, 5, 3)) == 0

        # moving the entry re-arms its reminder
        update_agenda_entry(db, owner, entry.id, entry_date=date(2026, 5, 6))
        assert entry.reminder_sent is False
        assert send_agenda_reminders(db, today=date(2026, 5, 5)) == 1
