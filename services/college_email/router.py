"""
services/college_email/router.py
College email verification: request a link, confirm it, and the admin
queue for domains that are not on the academic allow-list.
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.audit.log import RequestContext
from services.verification.engine import VerificationEngine, get_verification_engine
from shared.errors import raise_for_result
from shared.middleware.auth import require_admin, require_user
from shared.models.models import EmailVerification, EmailVerificationStatus, User
from shared.schemas.schemas import (
    CollegeEmailConfirmResponse,
    CollegeEmailRequest,
    CollegeEmailRequestResponse,
    EmailDecisionRequest,
    EmailVerificationResponse,
)

router = APIRouter(prefix="/verification", tags=["College Email"])


@router.post("/college-email", response_model=CollegeEmailRequestResponse)
async def request_college_email(
    data: CollegeEmailRequest,
    request: Request,
    current_user: User = Depends(require_user),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    """Send a one-time verification link to the claimed address."""
    result = await engine.request_college_email_verification(
        current_user.id, data.email, ctx=RequestContext.from_request(request)
    )
    receipt = raise_for_result(result)
    return CollegeEmailRequestResponse(domain=receipt.domain, expires_at=receipt.expires_at)


@router.get("/college-email/confirm", response_model=CollegeEmailConfirmResponse)
async def confirm_college_email(
    request: Request,
    token: str = Query(..., min_length=1, max_length=128),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    """Target of the mailed link. Public: the token is the credential."""
    result = await engine.confirm_college_email_verification(
        token, ctx=RequestContext.from_request(request)
    )
    confirmation = raise_for_result(result)
    return CollegeEmailConfirmResponse(
        status=confirmation.status.value,
        domain=confirmation.domain,
        verification_state=(
            confirmation.verification_state.value if confirmation.verification_state else None
        ),
        already_verified=confirmation.already_verified,
    )


# ── Admin ──────────────────────────────────────────────────────────────────────

@router.post("/admin/approve-email", response_model=EmailVerificationResponse)
async def approve_email(
    data: EmailDecisionRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    result = await engine.admin_approve_email(
        current_user.id,
        subject_id=data.user_id,
        token=data.token,
        reason=data.reason,
        ctx=RequestContext.from_request(request),
    )
    return raise_for_result(result)


@router.post("/admin/reject-email", response_model=EmailVerificationResponse)
async def reject_email(
    data: EmailDecisionRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    result = await engine.admin_reject_email(
        current_user.id,
        subject_id=data.user_id,
        token=data.token,
        reason=data.reason,
        ctx=RequestContext.from_request(request),
    )
    return raise_for_result(result)


@router.get("/admin/pending")
async def pending_email_verifications(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    q: str = Query("", max_length=255),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Confirmed addresses on non-academic domains waiting for a decision, newest first."""
    query = (
        select(EmailVerification, User)
        .join(User, User.id == EmailVerification.user_id)
        .where(EmailVerification.status == EmailVerificationStatus.PENDING_ADMIN)
    )
    q = q.strip()
    if q:
        pattern = f"%{q}%"
        query = query.where(or_(
            User.email.ilike(pattern),
            User.name.ilike(pattern),
            EmailVerification.email.ilike(pattern),
        ))
    query = query.order_by(EmailVerification.created_at.desc())

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    rows = (await db.execute(query.offset((page - 1) * page_size).limit(page_size))).all()

    return {
        "items": [
            {
                **EmailVerificationResponse.model_validate(record).model_dump(mode="json"),
                "user_name": user.name,
                "user_email": user.email,
                "verification_state": user.verification_state.value,
            }
            for record, user in rows
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),  # ceiling division
    }
