"""
services/audit/router.py
Admin view of the verification audit trail. Read-only: there is no
endpoint that edits or removes an entry.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import require_admin
from shared.models.models import User, VerificationAudit
from shared.schemas.schemas import AuditEntryResponse

router = APIRouter(prefix="/verification/admin", tags=["Audit"])


@router.get("/audit")
async def audit_trail(
    subject_id: Optional[UUID] = Query(None),
    action: Optional[str] = Query(None, max_length=50),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Audit entries, newest first."""
    query = select(VerificationAudit)
    if subject_id:
        query = query.where(VerificationAudit.subject_id == subject_id)
    if action:
        query = query.where(VerificationAudit.action == action)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    entries = await db.scalars(
        query.order_by(VerificationAudit.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )

    return {
        "items": [AuditEntryResponse.model_validate(e).model_dump(mode="json") for e in entries],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),
    }
