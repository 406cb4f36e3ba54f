"""
services/documents/router.py
Document submission and the admin review queue.
All state changes go through VerificationEngine.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.audit.log import RequestContext
from services.documents.workflow import Evidence
from services.verification.engine import VerificationEngine, get_verification_engine
from shared.errors import raise_for_result
from shared.middleware.auth import require_admin, require_user
from shared.models.models import Document, DocumentStatus, User, UserRole
from shared.schemas.schemas import (
    DocumentDecisionRequest,
    DocumentDecisionResponse,
    DocumentDeletedResponse,
    DocumentResponse,
    DocumentSubmitRequest,
)

router = APIRouter(prefix="/documents", tags=["Documents"])


# ── Owner ──────────────────────────────────────────────────────────────────────

@router.post("", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED)
async def submit_document(
    data: DocumentSubmitRequest,
    request: Request,
    current_user: User = Depends(require_user),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    """Submit an already-stored file for review. Aadhaar must use the OTP flow."""
    result = await engine.submit_document(
        current_user.id,
        data.document_type,
        Evidence(**data.evidence.model_dump()),
        expiry_date=data.expiry_date,
        notes=data.notes,
        property_id=data.property_id,
        ctx=RequestContext.from_request(request),
    )
    return raise_for_result(result)


@router.get("/mine", response_model=list[DocumentResponse])
async def my_documents(
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.scalars(
        select(Document)
        .where(Document.user_id == current_user.id)
        .order_by(Document.created_at.desc())
    )
    return result.all()


# ── Admin queue ────────────────────────────────────────────────────────────────
# Declared before /{document_id} so "admin" is never parsed as an id.

@router.get("/admin/pending")
async def pending_documents(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Documents awaiting a decision, oldest first (FIFO queue)."""
    query = (
        select(Document, User)
        .join(User, User.id == Document.user_id)
        .where(Document.status.in_([DocumentStatus.PENDING, DocumentStatus.UNDER_REVIEW]))
        .order_by(Document.created_at.asc())
    )
    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    rows = (await db.execute(query.offset((page - 1) * page_size).limit(page_size))).all()

    return {
        "items": [
            {
                **DocumentResponse.model_validate(document).model_dump(mode="json"),
                "owner_name": owner.name,
                "owner_email": owner.email,
                "owner_role": owner.role.value,
            }
            for document, owner in rows
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),  # ceiling division
    }


@router.post("/admin/{document_id}/review", response_model=DocumentResponse)
async def start_review(
    document_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    result = await engine.mark_under_review(
        current_user.id, document_id, ctx=RequestContext.from_request(request)
    )
    return raise_for_result(result)


@router.post("/admin/{document_id}/decision", response_model=DocumentDecisionResponse)
async def decide_document(
    document_id: UUID,
    data: DocumentDecisionRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    """
    Verify or reject a document.
    An approval of an expired document is turned into a rejection;
    check `overridden` in the response.
    """
    result = await engine.decide_document(
        current_user.id,
        document_id,
        data.outcome,
        reason=data.reason,
        notes=data.notes,
        ctx=RequestContext.from_request(request),
    )
    decision = raise_for_result(result)
    return DocumentDecisionResponse(
        document=DocumentResponse.model_validate(decision.document),
        outcome=decision.outcome.value,
        reason=decision.reason,
        overridden=decision.overridden,
    )


# ── Single document ────────────────────────────────────────────────────────────

@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document(
    document_id: UUID,
    current_user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    document = await db.get(Document, document_id)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    if document.user_id != current_user.id and current_user.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Access denied")
    return document


@router.delete("/{document_id}", response_model=DocumentDeletedResponse)
async def delete_document(
    document_id: UUID,
    request: Request,
    current_user: User = Depends(require_user),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    """Delete a document that is not verified. The caller removes the stored file."""
    result = await engine.delete_document(
        current_user.id, document_id, ctx=RequestContext.from_request(request)
    )
    deleted = raise_for_result(result)
    return DocumentDeletedResponse(id=deleted.id, storage_key=deleted.storage_key)


@router.post("/{document_id}/reverify", response_model=DocumentResponse)
async def request_reverification(
    document_id: UUID,
    request: Request,
    current_user: User = Depends(require_user),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    result = await engine.request_reverification(
        current_user.id, document_id, ctx=RequestContext.from_request(request)
    )
    return raise_for_result(result)
