"""
services/college_email/flow.py
Institutional email verification.

A subject claims an address, we mail a one-time link, and following the link
proves control of the mailbox. Domains on the academic allow-list (or matching
ACADEMIC_DOMAIN_REGEX) are approved on the spot; anything else waits for an
admin decision.

    requested -> auto_approved
              -> pending_admin -> admin_approved | admin_rejected
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update

from config.settings import settings
from services.audit.log import AuditLog, RequestContext
from services.verification.aggregator import SubjectLedger
from services.verification.notifier import Mailer, Notifier
from services.verification.transactions import in_subject_transaction
from shared.errors import (
    NotFoundError,
    StateConflictError,
    TokenExpired,
    TokenNotFound,
    ValidationError,
)
from shared.models.models import (
    AuditAction,
    EmailVerification,
    EmailVerificationStatus,
    NotificationType,
    TrustEventKind,
    User,
    VerificationState,
)
from shared.utils.clock import ensure_utc, utcnow
from shared.utils.security import generate_verification_token, hash_token
from shared.utils.validators import email_domain, normalize_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailRequestReceipt:
    verification_id: UUID
    email: str
    domain: str
    expires_at: datetime


@dataclass(frozen=True)
class EmailConfirmation:
    subject_id: UUID
    domain: str
    status: EmailVerificationStatus
    verification_state: Optional[VerificationState]
    already_verified: bool = False


def is_academic_domain(domain: str) -> bool:
    domain = (domain or "").lower()
    if domain in settings.academic_domains_list:
        return True
    return bool(settings.academic_domain_pattern.search(domain))


def build_verify_url(raw_token: str) -> str:
    return f"{settings.BACKEND_URL.rstrip('/')}/verification/college-email/confirm?token={raw_token}"


class CollegeEmailFlow:
    def __init__(self, db, mailer: Mailer):
        self.db = db
        self.mailer = mailer
        self.ledger = SubjectLedger(db)
        self.audit = AuditLog(db)
        self.notifier = Notifier(db)

    async def request(
        self, subject_id: UUID, email: str, ctx: Optional[RequestContext] = None
    ) -> EmailRequestReceipt:
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Valid email required", code="invalid_email")

        subject = await self.db.get(User, subject_id)
        if subject is None:
            raise NotFoundError("Subject not found", code="subject_not_found")

        raw_token, token_hash = generate_verification_token()
        record = EmailVerification(
            user_id=subject.id,
            email=normalized,
            domain=email_domain(normalized),
            token_hash=token_hash,
            status=EmailVerificationStatus.REQUESTED,
            expires_at=utcnow() + timedelta(hours=settings.EMAIL_TOKEN_TTL_HOURS),
        )
        self.db.add(record)
        await self.db.commit()

        self.mailer.send(
            normalized,
            "college_verification",
            {"user_name": subject.name or subject.email, "verify_url": build_verify_url(raw_token)},
        )
        await self.audit.record(subject.id, AuditAction.REQUEST_EMAIL, ctx, token_hash=token_hash)
        logger.info(f"College email verification requested by {subject.id} for domain {record.domain}")

        return EmailRequestReceipt(
            verification_id=record.id,
            email=record.email,
            domain=record.domain,
            expires_at=record.expires_at,
        )

    async def confirm(self, raw_token: str, ctx: Optional[RequestContext] = None) -> EmailConfirmation:
        if not raw_token:
            raise TokenNotFound("Token required")
        token_hash = hash_token(raw_token)

        record = await self._by_token_hash(token_hash)
        if record is None:
            raise TokenNotFound("Invalid token")
        if record.verified:
            return self._already_verified(record)
        if ensure_utc(record.expires_at) < utcnow():
            raise TokenExpired("Token expired")

        auto_approve = is_academic_domain(record.domain)
        new_status = (
            EmailVerificationStatus.AUTO_APPROVED if auto_approve else EmailVerificationStatus.PENDING_ADMIN
        )
        record_id, subject_id, domain, email = record.id, record.user_id, record.domain, record.email

        async def unit() -> Optional[User]:
            subject = await self.ledger.load(subject_id)
            flipped = await self.db.execute(
                update(EmailVerification)
                .where(EmailVerification.id == record_id, EmailVerification.verified.is_(False))
                .values(verified=True, verified_at=utcnow(), status=new_status)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount == 0:
                # A concurrent confirmation got there first
                return None

            subject.college = domain
            kind = (
                TrustEventKind.EMAIL_AUTO_APPROVED if auto_approve else TrustEventKind.EMAIL_PENDING_ADMIN
            )
            await self.ledger.record(subject, kind)
            return subject

        subject = await in_subject_transaction(self.db, unit)
        if subject is None:
            return self._already_verified(await self._by_token_hash(token_hash))

        if auto_approve:
            await self.audit.record(subject.id, AuditAction.VERIFY_EMAIL, ctx, token_hash=token_hash)
            await self.notifier.notify(
                subject.id,
                NotificationType.COLLEGE_VERIFIED,
                "College Verified",
                "Your college email has been verified and you have been granted the student badge.",
                {"domain": domain},
            )
        else:
            await self.audit.record(subject.id, AuditAction.VERIFY_EMAIL_PENDING, ctx, token_hash=token_hash)
            await self.notifier.notify_admins(
                NotificationType.COLLEGE_PENDING_ADMIN,
                "College Email Verification Pending",
                f"User {subject.email} verified their email {email} and requires approval.",
                {"user_id": str(subject.id)},
            )

        return EmailConfirmation(
            subject_id=subject.id,
            domain=domain,
            status=new_status,
            verification_state=subject.verification_state,
        )

    async def admin_decide(
        self,
        admin_id: UUID,
        approve: bool,
        subject_id: Optional[UUID] = None,
        token: Optional[str] = None,
        reason: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> EmailVerification:
        if not subject_id and not token:
            raise ValidationError("userId or token required", code="target_required")
        reason = (reason or "").strip() or None
        token_hash = hash_token(token) if token else None

        async def unit() -> EmailVerification:
            record = await self._find_target(subject_id, token_hash)
            if record.status != EmailVerificationStatus.PENDING_ADMIN:
                raise StateConflictError(
                    f"Verification is not awaiting admin review (status: {record.status.value})"
                )
            subject = await self.ledger.load(record.user_id)

            record.status = (
                EmailVerificationStatus.ADMIN_APPROVED if approve else EmailVerificationStatus.ADMIN_REJECTED
            )
            record.decided_by_id = admin_id
            record.decided_at = utcnow()
            record.decision_reason = reason
            kind = TrustEventKind.EMAIL_ADMIN_APPROVED if approve else TrustEventKind.EMAIL_ADMIN_REJECTED
            await self.ledger.record(subject, kind)
            return record

        record = await in_subject_transaction(self.db, unit)

        if approve:
            await self.audit.record(
                record.user_id, AuditAction.ADMIN_APPROVE_EMAIL, ctx,
                admin_id=admin_id, reason=reason, token_hash=record.token_hash,
            )
            await self.notifier.notify(
                record.user_id,
                NotificationType.COLLEGE_APPROVED,
                "Verification Approved",
                "An administrator has approved your college verification.",
            )
        else:
            await self.audit.record(
                record.user_id, AuditAction.ADMIN_REJECT_EMAIL, ctx,
                admin_id=admin_id, reason=reason, token_hash=record.token_hash,
            )
            await self.notifier.notify(
                record.user_id,
                NotificationType.COLLEGE_REJECTED,
                "Verification Rejected",
                f"Your college verification was rejected: {reason or 'No reason provided'}",
            )
        return record

    # ── Lookups ──────────────────────────────────────────────

    async def _by_token_hash(self, token_hash: str) -> Optional[EmailVerification]:
        return await self.db.scalar(
            select(EmailVerification)
            .where(EmailVerification.token_hash == token_hash)
            .execution_options(populate_existing=True)
        )

    async def _find_target(self, subject_id: Optional[UUID], token_hash: Optional[str]) -> EmailVerification:
        if token_hash:
            record = await self._by_token_hash(token_hash)
        else:
            record = await self.db.scalar(
                select(EmailVerification)
                .where(
                    EmailVerification.user_id == subject_id,
                    EmailVerification.status == EmailVerificationStatus.PENDING_ADMIN,
                )
                .order_by(EmailVerification.created_at.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
        if record is None:
            raise NotFoundError("Verification record not found", code="verification_not_found")
        return record

    @staticmethod
    def _already_verified(record: EmailVerification) -> EmailConfirmation:
        return EmailConfirmation(
            subject_id=record.user_id,
            domain=record.domain,
            status=record.status,
            verification_state=None,
            already_verified=True,
        )
