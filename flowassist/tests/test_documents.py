"""
Client Document Tests
=====================

Storage keys, upload limits, portal visibility and signed downloads.
"""

from datetime import datetime

import pytest

from flowassist.errors import NotFoundError, ValidationError
from flowassist.storage import LocalStorage, generate_key, safe_filename

PDF = "application/pdf"


class TestStorage:
    def test_put_get_delete(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.put("t/c/divers/1_a.txt", b"hello")
        assert storage.exists("t/c/divers/1_a.txt")
        assert storage.get("t/c/divers/1_a.txt") == b"hello"
        assert storage.delete("t/c/divers/1_a.txt")
        assert not storage.delete("t/c/divers/1_a.txt")

    def test_keys_cannot_escape_root(self, tmp_path):
        storage = LocalStorage(str(tmp_path / "root"))
        with pytest.raises(ValueError):
            storage.put("../outside.txt", b"x")

    def test_generate_key(self):
        key = generate_key("t1", "c1", "fiscal", "../Bilan 2025.pdf", now=datetime(2026, 1, 1))
        assert key.startswith("t1/c1/fiscal/")
        assert key.endswith("_Bilan_2025.pdf")

    def test_safe_filename(self):
        assert safe_filename("../../etc/passwd") == "passwd"
        assert safe_filename("") == "document"


def test_upload_validation(seed, auth_for):
    from flowassist.db.session import get_db_session
    from flowassist.documents import upload_document

    with get_db_session() as db:
        auth = auth_for(db, seed["owner_id"], seed["tenant_id"])

        with pytest.raises(ValidationError):
            upload_document(db, auth, seed["client_id"], "vide.pdf", PDF, b"")
        with pytest.raises(ValidationError):
            upload_document(db, auth, seed["client_id"], "script.sh", "application/x-sh", b"#!/bin/sh")
        # matter of another client
        with pytest.raises(ValidationError):
            upload_document(db, auth, seed["other_client_id"], "a.pdf", PDF, b"%PDF", matter_id=seed["matter_id"])


def test_quota_is_per_client(seed, auth_for, monkeypatch):
    from flowassist.config import get_settings
    from flowassist.db.session import get_db_session
    from flowassist.documents import client_usage_bytes, upload_document

    monkeypatch.setattr(get_settings(), "client_quota_bytes", 10)
    with get_db_session() as db:
        auth = auth_for(db, seed["owner_id"], seed["tenant_id"])
        upload_document(db, auth, seed["client_id"], "a.txt", "text/plain", b"12345678")
        assert client_usage_bytes(db, seed["tenant_id"], seed["client_id"]) == 8

        with pytest.raises(ValidationError):
            upload_document(db, auth, seed["client_id"], "b.txt", "text/plain", b"123")
        upload_document(db, auth, seed["other_client_id"], "b.txt", "text/plain", b"123")


def test_portal_user_sees_own_client_only(seed, auth_for):
    from flowassist.db.session import get_db_session
    from flowassist.documents import get_document, list_documents, upload_document

    with get_db_session() as db:
        owner = auth_for(db, seed["owner_id"], seed["tenant_id"])
        mine = upload_document(db, owner, seed["client_id"], "bilan.pdf", PDF, b"%PDF-1")
        other = upload_document(db, owner, seed["other_client_id"], "autre.pdf", PDF, b"%PDF-2")

        portal = auth_for(db, seed["portal_id"], seed["tenant_id"])
        assert [d.id for d in list_documents(db, portal)] == [mine.id]
        with pytest.raises(NotFoundError):
            get_document(db, portal, other.id)


def test_upload_and_signed_download(seed, api_client):
    owner = api_client(seed["owner_id"], seed["tenant_id"])

    resp = owner.post(
        "/api/v1/documents",
        data={"client_id": seed["client_id"], "category": "fiscal"},
        files={"file": ("Déclaration TVA.pdf", b"%PDF-1.4 test", PDF)},
    )
    assert resp.status_code == 200
    document = resp.json()
    assert document["category_label"] == "Fiscal"
    assert document["file_size"] == len(b"%PDF-1.4 test")

    quota = owner.get(f"/api/v1/clients/{seed['client_id']}/quota").json()
    assert quota["used_bytes"] == document["file_size"]

    portal = api_client(seed["portal_id"], seed["tenant_id"])
    url = portal.get(f"/api/v1/documents/{document['id']}/url").json()["url"]

    from fastapi.testclient import TestClient
    from flowassist.api import app

    resp = TestClient(app).get(url)
    assert resp.status_code == 200
    assert resp.content == b"%PDF-1.4 test"
    assert "attachment" in resp.headers["content-disposition"]

    assert TestClient(app).get("/api/v1/files/forged-token").status_code == 404


def test_portal_user_cannot_upload_or_delete(seed, api_client):
    portal = api_client(seed["portal_id"], seed["tenant_id"])
    resp = portal.post(
        "/api/v1/documents",
        data={"client_id": seed["client_id"]},
        files={"file": ("a.pdf", b"%PDF", PDF)},
    )
    assert resp.status_code == 403


def test_delete_removes_stored_file(seed, auth_for):
    from flowassist.db.session import get_db_session
    from flowassist.documents import delete_document, upload_document
    from flowassist.storage import get_storage

    with get_db_session() as db:
        auth = auth_for(db, seed["owner_id"], seed["tenant_id"])
        document = upload_document(db, auth, seed["client_id"], "a.pdf", PDF, b"%PDF")
        key = document.storage_key
        assert get_storage().exists(key)

        delete_document(db, auth, document.id)
        assert not get_storage().exists(key)


def test_failed_commit_leaves_no_stored_file(seed, api_client, monkeypatch):
    from contextlib import contextmanager
    from pathlib import Path

    import flowassist.api_documents as api_documents
    from flowassist.config import get_settings
    from flowassist.db.session import get_db_session

    @contextmanager
    def session_failing_on_commit():
        with get_db_session() as db:
            yield db
            raise RuntimeError("database unavailable")

    monkeypatch.setattr(api_documents, "get_db_session", session_failing_on_commit)

    owner = api_client(seed["owner_id"], seed["tenant_id"])
    resp = owner.post(
        "/api/v1/documents",
        data={"client_id": seed["client_id"]},
        files={"file": ("a.pdf", b"%PDF", PDF)},
    )
    assert resp.status_code == 500
    assert [p for p in Path(get_settings().storage_root).rglob("*") if p.is_file()] == []


def test_deleting_client_removes_its_files(seed, auth_for):
    from flowassist.clients import delete_client
    from flowassist.db.models import Document
    from flowassist.db.session import get_db_session
    from flowassist.documents import upload_document
    from flowassist.storage import get_storage

    with get_db_session() as db:
        auth = auth_for(db, seed["owner_id"], seed["tenant_id"])
        # Rif SA has no matters, so it is deleted rather than deactivated
        key = upload_document(db, auth, seed["other_client_id"], "a.pdf", PDF, b"%PDF").storage_key
        kept = upload_document(db, auth, seed["client_id"], "b.pdf", PDF, b"%PDF").storage_key

        assert delete_client(db, auth, seed["other_client_id"]) is True
        assert not get_storage().exists(key)
        assert get_storage().exists(kept)
        assert db.query(Document).filter(Document.client_id == seed["other_client_id"]).count() == 0
