"""
services/otp/aadhaar.py
Aadhaar OTP track: ask the provider for a challenge, confirm the code, and
mark the subject as Aadhaar-verified. The Aadhaar number itself is only
forwarded to the provider.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from services.audit.log import AuditLog, RequestContext
from services.otp.providers import ChallengeTicket, OtpProvider
from services.verification.aggregator import SubjectLedger
from services.verification.notifier import Notifier
from services.verification.transactions import in_subject_transaction
from shared.errors import NotFoundError
from shared.models.models import AuditAction, NotificationType, TrustEventKind, User, VerificationState
from shared.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AadhaarVerified:
    subject_id: UUID
    provider_ref: str
    verified_at: datetime
    verification_state: VerificationState


class AadhaarOtpTrack:
    def __init__(self, db, provider: OtpProvider):
        self.db = db
        self.provider = provider
        self.ledger = SubjectLedger(db)
        self.audit = AuditLog(db)
        self.notifier = Notifier(db)

    async def request_challenge(
        self, subject_id: UUID, id_number: str, ctx: Optional[RequestContext] = None
    ) -> ChallengeTicket:
        if await self.db.get(User, subject_id) is None:
            raise NotFoundError("Subject not found", code="subject_not_found")

        ticket = await self.provider.request_challenge(id_number)
        await self.audit.record(subject_id, AuditAction.REQUEST_OTP, ctx, provider_ref=ticket.provider_ref)
        return ticket

    async def verify_challenge(
        self,
        subject_id: UUID,
        request_id: str,
        code: str,
        ctx: Optional[RequestContext] = None,
    ) -> AadhaarVerified:
        # Fail before consuming the challenge if the subject is gone
        if await self.db.get(User, subject_id) is None:
            raise NotFoundError("Subject not found", code="subject_not_found")

        confirmation = await self.provider.verify_challenge(request_id, code)

        async def unit() -> User:
            subject = await self.ledger.load(subject_id)
            subject.aadhaar_verified = True
            subject.aadhaar_verified_at = utcnow()
            subject.aadhaar_provider_ref = confirmation.provider_ref
            await self.ledger.record(subject, TrustEventKind.AADHAAR_VERIFIED)
            return subject

        subject = await in_subject_transaction(self.db, unit)
        logger.info(f"Aadhaar verified for subject {subject.id}")

        await self.audit.record(
            subject.id, AuditAction.VERIFY_AADHAAR, ctx, provider_ref=confirmation.provider_ref
        )
        await self.notifier.notify(
            subject.id,
            NotificationType.AADHAAR_VERIFIED,
            "Aadhaar Verified",
            "Your Aadhaar has been verified successfully.",
            {"provider_ref": confirmation.provider_ref},
        )
        return AadhaarVerified(
            subject_id=subject.id,
            provider_ref=confirmation.provider_ref,
            verified_at=subject.aadhaar_verified_at,
            verification_state=subject.verification_state,
        )
