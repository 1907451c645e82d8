"""
Documents API Endpoints
=======================

FastAPI router for client documents: upload, listing, quota, deletion and
signed download links.
"""

import io
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Depends, UploadFile, File, Form, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .auth import AuthContext, Permission
from .clients import get_client
from .config import get_settings
from .db.models import DocumentCategory
from .db.session import get_db_session
from .deps import require_permission
from .errors import BusinessRuleError
from . import documents as document_service
from .jobs.queue import enqueue_job
from .jobs.tasks import task_document_notification
from .storage import remove_stored_files, safe_filename

logger = logging.getLogger(__name__)

router = APIRouter(tags=["documents"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class DocumentResponse(BaseModel):
    """Document response"""
    id: str
    client_id: str
    matter_id: Optional[str]
    category: str
    category_label: str
    file_name: str
    file_size: int
    mime_type: str
    uploaded_by: Optional[str]
    created_at: datetime


class QuotaResponse(BaseModel):
    client_id: str
    used_bytes: int
    quota_bytes: int
    percent: int


class SignedUrlResponse(BaseModel):
    url: str
    expires_in: int


def _document_out(document) -> DocumentResponse:
    return DocumentResponse(
        id=document.id,
        client_id=document.client_id,
        matter_id=document.matter_id,
        category=document.category.value,
        category_label=document_service.CATEGORY_LABELS[document.category],
        file_name=document.file_name,
        file_size=document.file_size,
        mime_type=document.mime_type,
        uploaded_by=document.uploaded_by,
        created_at=document.created_at,
    )


# =============================================================================
# DOCUMENTS
# =============================================================================

@router.post("/documents", response_model=DocumentResponse)
async def upload_document(
    file: UploadFile = File(...),
    client_id: str = Form(...),
    category: DocumentCategory = Form(DocumentCategory.DIVERS),
    matter_id: Optional[str] = Form(None),
    auth: AuthContext = Depends(require_permission(Permission.DOC_MANAGE))
):
    """
    Upload a document to a client (optionally to one of its matters).
    The client's billing address is notified in the background.
    """
    stored_key = None
    try:
        data = await file.read()
        with get_db_session() as db:
            document = document_service.upload_document(
                db, auth,
                client_id=client_id,
                file_name=file.filename or "document",
                mime_type=file.content_type or "application/octet-stream",
                data=data,
                category=category,
                matter_id=matter_id or None,
            )
            stored_key = document.storage_key
            response = _document_out(document)
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to upload document")
        # the row was rolled back
        if stored_key:
            remove_stored_files([stored_key])
        raise HTTPException(status_code=500, detail=str(e))

    enqueue_job(task_document_notification, response.id, retry=1)
    return response


@router.get("/documents", response_model=List[DocumentResponse])
async def list_documents(
    client_id: Optional[str] = Query(None),
    category: Optional[DocumentCategory] = Query(None),
    matter_id: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_permission(Permission.DOC_READ))
):
    """
    List documents. Portal users only see their client's documents.
    """
    try:
        with get_db_session() as db:
            documents = document_service.list_documents(db, auth, client_id, category, matter_id)
            return [_document_out(d) for d in documents]
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to list documents")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    auth: AuthContext = Depends(require_permission(Permission.DOC_MANAGE))
):
    with get_db_session() as db:
        document_service.delete_document(db, auth, document_id)
    return {"message": "Document deleted successfully", "id": document_id}


@router.get("/documents/{document_id}/url", response_model=SignedUrlResponse)
async def get_document_url(
    document_id: str,
    auth: AuthContext = Depends(require_permission(Permission.DOC_READ))
):
    """Short-lived download link for a document."""
    with get_db_session() as db:
        document = document_service.get_document(db, auth, document_id)
        token = document_service.signed_download_token(document)
    return SignedUrlResponse(
        url=f"/api/v1/files/{token}",
        expires_in=get_settings().download_url_expire_seconds,
    )


@router.get("/clients/{client_id}/quota", response_model=QuotaResponse)
async def get_client_quota(
    client_id: str,
    auth: AuthContext = Depends(require_permission(Permission.DOC_READ))
):
    with get_db_session() as db:
        client = get_client(db, auth, client_id)
        used = document_service.client_usage_bytes(db, auth.tenant_id, client.id)
    quota = get_settings().client_quota_bytes
    return QuotaResponse(client_id=client_id, used_bytes=used, quota_bytes=quota, percent=int(used * 100 // quota))


@router.get("/files/{token}")
async def download_file(token: str):
    """
    Stream a document behind a signed token (no session needed).
    """
    try:
        with get_db_session() as db:
            document, data = document_service.resolve_download(db, token)
            filename = safe_filename(document.file_name)
            media_type = document.mime_type or "application/octet-stream"
    except (HTTPException, BusinessRuleError):
        raise
    except Exception as e:
        logger.exception("Failed to download document")
        raise HTTPException(status_code=500, detail=str(e))

    return StreamingResponse(
        io.BytesIO(data),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )
