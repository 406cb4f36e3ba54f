"""
services/verification/engine.py
Public surface of the verification engine.

Every operation returns a Result. VerificationErrors raised by a track are
caught here, the session is rolled back so no partial write survives, and the
error comes back as Result.failure(...) for the caller to map.
"""

import logging
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.audit.log import RequestContext
from services.college_email.flow import CollegeEmailFlow, EmailConfirmation, EmailRequestReceipt
from services.documents.workflow import DeletedDocument, DocumentDecision, DocumentWorkflow, Evidence
from services.otp.aadhaar import AadhaarOtpTrack, AadhaarVerified
from services.otp.providers import ChallengeTicket, OtpProvider, get_otp_provider
from services.verification.notifier import Mailer, get_mailer
from shared.errors import NotFoundError, Result, VerificationError
from shared.models.models import Document, DocumentStatus, EmailVerification, User

logger = logging.getLogger(__name__)


def overall_document_status(pending: int, verified: int, rejected: int) -> str:
    if verified > 0 and pending == 0 and rejected == 0:
        return "verified"
    if pending > 0:
        return "pending"
    if rejected > 0 and verified == 0:
        return "rejected"
    if verified > 0:
        return "partially_verified"
    return "not_verified"


class VerificationEngine:
    def __init__(self, db: AsyncSession, otp_provider: OtpProvider, mailer: Mailer):
        self.db = db
        self.documents = DocumentWorkflow(db)
        self.aadhaar = AadhaarOtpTrack(db, otp_provider)
        self.college_email = CollegeEmailFlow(db, mailer)

    async def _run(self, operation: str, call: Callable[[], Awaitable[Any]]) -> Result:
        try:
            return Result.success(await call())
        except VerificationError as e:
            await self.db.rollback()
            logger.info(f"{operation} failed: {e.category.value}/{e.code}: {e.message}")
            return Result.failure(e)

    # ── Documents ────────────────────────────────────────────

    async def submit_document(
        self,
        owner_id: UUID,
        document_type: str,
        evidence: Evidence,
        expiry_date: Optional[date] = None,
        notes: Optional[str] = None,
        property_id: Optional[UUID] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Result[Document]:
        return await self._run("submit_document", lambda: self.documents.submit(
            owner_id, document_type, evidence, ctx,
            expiry_date=expiry_date, notes=notes, property_id=property_id,
        ))

    async def mark_under_review(
        self, admin_id: UUID, document_id: UUID, ctx: Optional[RequestContext] = None
    ) -> Result[Document]:
        return await self._run(
            "mark_under_review", lambda: self.documents.mark_under_review(admin_id, document_id, ctx)
        )

    async def decide_document(
        self,
        admin_id: UUID,
        document_id: UUID,
        outcome: str,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Result[DocumentDecision]:
        return await self._run("decide_document", lambda: self.documents.decide(
            admin_id, document_id, outcome, reason=reason, notes=notes, ctx=ctx,
        ))

    async def request_reverification(
        self, owner_id: UUID, document_id: UUID, ctx: Optional[RequestContext] = None
    ) -> Result[Document]:
        return await self._run(
            "request_reverification",
            lambda: self.documents.request_reverification(owner_id, document_id, ctx),
        )

    async def delete_document(
        self, actor_id: UUID, document_id: UUID, ctx: Optional[RequestContext] = None
    ) -> Result[DeletedDocument]:
        return await self._run("delete_document", lambda: self.documents.delete(actor_id, document_id, ctx))

    # ── Aadhaar OTP ──────────────────────────────────────────

    async def request_otp_challenge(
        self, subject_id: UUID, id_number: str, ctx: Optional[RequestContext] = None
    ) -> Result[ChallengeTicket]:
        return await self._run(
            "request_otp_challenge", lambda: self.aadhaar.request_challenge(subject_id, id_number, ctx)
        )

    async def verify_otp_challenge(
        self, subject_id: UUID, request_id: str, code: str, ctx: Optional[RequestContext] = None
    ) -> Result[AadhaarVerified]:
        return await self._run(
            "verify_otp_challenge",
            lambda: self.aadhaar.verify_challenge(subject_id, request_id, code, ctx),
        )

    # ── College email ────────────────────────────────────────

    async def request_college_email_verification(
        self, subject_id: UUID, email: str, ctx: Optional[RequestContext] = None
    ) -> Result[EmailRequestReceipt]:
        return await self._run(
            "request_college_email_verification",
            lambda: self.college_email.request(subject_id, email, ctx),
        )

    async def confirm_college_email_verification(
        self, token: str, ctx: Optional[RequestContext] = None
    ) -> Result[EmailConfirmation]:
        return await self._run(
            "confirm_college_email_verification", lambda: self.college_email.confirm(token, ctx)
        )

    async def admin_approve_email(
        self,
        admin_id: UUID,
        subject_id: Optional[UUID] = None,
        token: Optional[str] = None,
        reason: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Result[EmailVerification]:
        return await self._run("admin_approve_email", lambda: self.college_email.admin_decide(
            admin_id, True, subject_id=subject_id, token=token, reason=reason, ctx=ctx,
        ))

    async def admin_reject_email(
        self,
        admin_id: UUID,
        subject_id: Optional[UUID] = None,
        token: Optional[str] = None,
        reason: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Result[EmailVerification]:
        return await self._run("admin_reject_email", lambda: self.college_email.admin_decide(
            admin_id, False, subject_id=subject_id, token=token, reason=reason, ctx=ctx,
        ))

    # ── Status ───────────────────────────────────────────────

    async def get_verification_status(self, subject_id: UUID) -> Result[Dict[str, Any]]:
        return await self._run("get_verification_status", lambda: self._status(subject_id))

    async def _status(self, subject_id: UUID) -> Dict[str, Any]:
        subject = await self.db.get(User, subject_id, populate_existing=True)
        if subject is None:
            raise NotFoundError("Subject not found", code="subject_not_found")

        statuses = (await self.db.scalars(
            select(Document.status).where(Document.user_id == subject_id)
        )).all()
        pending = sum(1 for s in statuses if s in (DocumentStatus.PENDING, DocumentStatus.UNDER_REVIEW))
        verified = sum(1 for s in statuses if s == DocumentStatus.VERIFIED)
        rejected = sum(1 for s in statuses if s == DocumentStatus.REJECTED)

        return {
            "subject_id": subject.id,
            "identity": subject.identity_verified,
            "address": subject.address_verified,
            "property": subject.property_verified,
            "overall": overall_document_status(pending, verified, rejected),
            "counts": {
                "total": len(statuses),
                "pending": pending,
                "verified": verified,
                "rejected": rejected,
            },
            "verification_state": subject.verification_state,
            "aadhaar_verified": subject.aadhaar_verified,
            "is_fully_verified": subject.is_fully_verified,
        }


def get_verification_engine(
    db: AsyncSession = Depends(get_db),
    otp_provider: OtpProvider = Depends(get_otp_provider),
    mailer: Mailer = Depends(get_mailer),
) -> VerificationEngine:
    return VerificationEngine(db, otp_provider, mailer)
