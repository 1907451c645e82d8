"""
Client Documents
================

Files shared with clients, filed by category and optionally by matter.

Upload rules:
- 10 MB max per file
- office documents, PDF, images, text and CSV only
- 100 MB quota per client

Downloads go through short-lived signed tokens so the file route
needs no session.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from .auth import AuthContext, create_download_token, decode_token
from .clients import client_matter_scope, get_client, get_matter
from .config import get_settings
from .db.models import Document, DocumentCategory
from .errors import NotFoundError, ValidationError
from .storage import StorageBackend, generate_key, get_storage, remove_stored_files

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "image/jpeg",
    "image/png",
    "text/plain",
    "text/csv",
}

CATEGORY_LABELS = {
    DocumentCategory.FACTURES: "Factures",
    DocumentCategory.COMPTABLE: "Comptable",
    DocumentCategory.FISCAL: "Fiscal",
    DocumentCategory.JURIDIQUE: "Juridique",
    DocumentCategory.SOCIAL: "Social",
    DocumentCategory.DIVERS: "Divers",
}


def client_usage_bytes(db: Session, tenant_id: str, client_id: str) -> int:
    total = db.query(func.coalesce(func.sum(Document.file_size), 0)).filter(
        Document.tenant_id == tenant_id,
        Document.client_id == client_id,
    ).scalar()
    return int(total or 0)


def validate_upload(file_size: int, mime_type: str, current_usage: int) -> None:
    settings = get_settings()
    if file_size <= 0:
        raise ValidationError("File is empty")
    if file_size > settings.max_upload_bytes:
        raise ValidationError(f"File too large (max {settings.max_upload_bytes // (1024 * 1024)} MB)")
    if (mime_type or "").split(";")[0].strip().lower() not in ALLOWED_MIME_TYPES:
        raise ValidationError(f"File type not allowed: {mime_type}")
    if current_usage + file_size > settings.client_quota_bytes:
        raise ValidationError("Client storage quota exceeded")


def upload_document(db: Session, auth: AuthContext, client_id: str, file_name: str, mime_type: str,
                    data: bytes, category: DocumentCategory = DocumentCategory.DIVERS,
                    matter_id: Optional[str] = None, storage: Optional[StorageBackend] = None) -> Document:
    client = get_client(db, auth, client_id)
    if matter_id:
        matter = get_matter(db, auth, matter_id)
        if matter.client_id != client.id:
            raise ValidationError("Matter does not belong to this client")

    category = DocumentCategory(category)
    validate_upload(len(data), mime_type, client_usage_bytes(db, auth.tenant_id, client.id))

    storage = storage or get_storage()
    key = generate_key(auth.tenant_id, client.id, category.value, file_name)
    storage.put(key, data, content_type=mime_type)

    try:
        document = Document(
            tenant_id=auth.tenant_id,
            client_id=client.id,
            matter_id=matter_id,
            category=category,
            file_name=file_name,
            storage_key=key,
            file_size=len(data),
            mime_type=mime_type.split(";")[0].strip().lower(),
            uploaded_by=auth.user_id,
        )
        db.add(document)
        db.flush()
    except Exception:
        logger.exception(f"Document insert failed, removing stored file {key}")
        storage.delete(key)
        raise

    logger.info(f"Document {file_name} uploaded for client {client.code} ({len(data)} bytes)")
    return document


def list_documents(db: Session, auth: AuthContext, client_id: Optional[str] = None,
                   category: Optional[DocumentCategory] = None, matter_id: Optional[str] = None) -> List[Document]:
    query = db.query(Document).filter(Document.tenant_id == auth.tenant_id)

    if auth.is_client:
        query = query.filter(Document.client_id.in_(auth.client_ids or [""]))
        scope = client_matter_scope(db, auth)
        if scope is not None:
            query = query.filter((Document.matter_id == None) | (Document.matter_id.in_(scope)))

    if client_id:
        query = query.filter(Document.client_id == client_id)
    if category:
        query = query.filter(Document.category == DocumentCategory(category))
    if matter_id:
        query = query.filter(Document.matter_id == matter_id)
    return query.order_by(Document.created_at.desc()).all()


def get_document(db: Session, auth: AuthContext, document_id: str) -> Document:
    document = db.query(Document).filter(Document.id == document_id, Document.tenant_id == auth.tenant_id).first()
    if not document:
        raise NotFoundError("Document not found")

    if auth.is_client:
        if document.client_id not in auth.client_ids:
            raise NotFoundError("Document not found")
        scope = client_matter_scope(db, auth)
        if scope is not None and document.matter_id and document.matter_id not in scope:
            raise NotFoundError("Document not found")
    return document


def delete_document(db: Session, auth: AuthContext, document_id: str,
                    storage: Optional[StorageBackend] = None) -> None:
    document = get_document(db, auth, document_id)
    key = document.storage_key
    db.delete(document)
    db.flush()
    remove_stored_files([key], storage)


def signed_download_token(document: Document) -> str:
    return create_download_token(document.id, document.tenant_id)


def resolve_download(db: Session, token: str, storage: Optional[StorageBackend] = None) -> Tuple[Document, bytes]:
    """Load the document and bytes behind a download token; NotFoundError when invalid or expired."""
    payload = decode_token(token, expected_type="download")
    if not payload:
        raise NotFoundError("Download link invalid or expired")

    document = db.query(Document).filter(
        Document.id == payload.get("sub"),
        Document.tenant_id == payload.get("tenant_id"),
    ).first()
    if not document:
        raise NotFoundError("Document not found")

    try:
        data = (storage or get_storage()).get(document.storage_key)
    except FileNotFoundError:
        raise NotFoundError("Stored file is missing")
    return document, data
