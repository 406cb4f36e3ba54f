"""
services/documents/workflow.py
Admin-reviewed document track.

    pending -> under_review -> verified | rejected
    rejected | expired      -> pending            (owner re-verification only)

A verified document can't be changed or deleted; the only way out is
re-verification once it has expired. Each transition updates the owner's
sub-record for the document's category and appends a trust event in one
transaction, then audits and notifies the owner.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import select

from config.settings import settings
from services.audit.log import AuditLog, RequestContext
from services.verification.aggregator import SubjectLedger
from services.verification.notifier import Notifier
from services.verification.transactions import in_subject_transaction
from shared.errors import (
    AuthorizationError,
    DisallowedDocumentType,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from shared.models.models import (
    DOCUMENT_CATEGORIES,
    NATIONAL_ID_TYPES,
    AuditAction,
    Document,
    DocumentCategory,
    DocumentStatus,
    DocumentType,
    NotificationType,
    TrustEventKind,
    User,
    UserRole,
)
from shared.utils.clock import utcnow, utctoday

logger = logging.getLogger(__name__)

EXPIRED_REASON = "Document expired"

_SUB_RECORDS = {
    DocumentCategory.IDENTITY: "identity",
    DocumentCategory.ADDRESS: "address",
    DocumentCategory.PROPERTY: "property",
}


class DecisionOutcome(str, Enum):
    VERIFIED = "verified"
    REJECTED_BY_ADMIN = "rejected_by_admin"
    REJECTED_EXPIRED = "rejected_expired"


@dataclass(frozen=True)
class Evidence:
    """Reference to an already-stored file."""
    storage_key: str
    original_name: str
    mime_type: str
    size_bytes: int


@dataclass(frozen=True)
class DocumentDecision:
    document: Document
    outcome: DecisionOutcome
    reason: Optional[str]
    passed_through_review: bool = False

    @property
    def overridden(self) -> bool:
        """True when a requested approval was turned into a rejection by the engine."""
        return self.outcome == DecisionOutcome.REJECTED_EXPIRED


@dataclass(frozen=True)
class DeletedDocument:
    id: UUID
    owner_id: UUID
    storage_key: str
    document_type: DocumentType


def is_expired(document: Document, today: Optional[date] = None) -> bool:
    if document.expiry_date is None:
        return False
    return document.expiry_date < (today or utctoday())


def parse_document_type(value) -> DocumentType:
    try:
        return DocumentType(value)
    except ValueError:
        raise ValidationError(f"Unknown document type '{value}'", code="invalid_document_type")


class DocumentWorkflow:
    def __init__(self, db):
        self.db = db
        self.ledger = SubjectLedger(db)
        self.audit = AuditLog(db)
        self.notifier = Notifier(db)

    # ── Helpers ──────────────────────────────────────────────

    async def _load(self, document_id: UUID) -> Document:
        document = await self.db.scalar(
            select(Document).where(Document.id == document_id).execution_options(populate_existing=True)
        )
        if document is None:
            raise NotFoundError("Document not found", code="document_not_found")
        return document

    @staticmethod
    def _check_evidence(evidence: Evidence) -> None:
        if not evidence.storage_key:
            raise ValidationError("Evidence reference is required", code="evidence_missing")
        if evidence.mime_type.lower() not in settings.allowed_mime_types:
            raise ValidationError(
                "Invalid file type. Only JPEG, PNG, and PDF are allowed.", code="invalid_mime_type"
            )
        if evidence.size_bytes <= 0 or evidence.size_bytes > settings.DOCUMENT_MAX_SIZE_BYTES:
            raise ValidationError("File size is outside the allowed range", code="invalid_file_size")

    async def _apply_sub_record(self, owner: User, document: Document, now: datetime) -> None:
        prefix = _SUB_RECORDS.get(document.category)
        if prefix is None:
            return
        if document.category == DocumentCategory.PROPERTY and owner.role != UserRole.OWNER:
            return

        if document.status == DocumentStatus.VERIFIED:
            setattr(owner, f"{prefix}_verified", True)
            setattr(owner, f"{prefix}_verified_at", now)
            setattr(owner, f"{prefix}_document_id", document.id)
        elif getattr(owner, f"{prefix}_document_id") == document.id:
            # Fall back to another verified document in the same category
            other = await self.db.scalar(
                select(Document)
                .where(
                    Document.user_id == owner.id,
                    Document.category == document.category,
                    Document.status == DocumentStatus.VERIFIED,
                    Document.id != document.id,
                )
                .order_by(Document.reviewed_at.desc())
                .limit(1)
            )
            setattr(owner, f"{prefix}_verified", other is not None)
            setattr(owner, f"{prefix}_verified_at", other.reviewed_at if other else None)
            setattr(owner, f"{prefix}_document_id", other.id if other else None)

    async def _record(self, owner: User, kind: TrustEventKind, document: Document) -> None:
        await self.ledger.record(
            owner,
            kind,
            document_id=document.id,
            document_type=DocumentType(document.document_type).value,
            category=DocumentCategory(document.category).value,
        )

    @staticmethod
    def _begin_review(document: Document, admin_id: UUID) -> None:
        document.status = DocumentStatus.UNDER_REVIEW
        document.reviewer_id = admin_id

    # ── Transitions ──────────────────────────────────────────

    async def submit(
        self,
        owner_id: UUID,
        document_type,
        evidence: Evidence,
        ctx: Optional[RequestContext] = None,
        expiry_date: Optional[date] = None,
        notes: Optional[str] = None,
        property_id: Optional[UUID] = None,
    ) -> Document:
        document_type = parse_document_type(document_type)
        if document_type in NATIONAL_ID_TYPES:
            raise DisallowedDocumentType(
                "Aadhaar can't be uploaded as a document. Verify it with the Aadhaar OTP flow instead."
            )
        self._check_evidence(evidence)
        category = DOCUMENT_CATEGORIES[document_type]

        async def unit() -> Document:
            owner = await self.ledger.load(owner_id)
            if category == DocumentCategory.PROPERTY and owner.role != UserRole.OWNER:
                raise AuthorizationError("Only property owners can submit property documents")

            document = Document(
                user_id=owner.id,
                document_type=document_type,
                category=category,
                status=DocumentStatus.PENDING,
                storage_key=evidence.storage_key,
                original_name=evidence.original_name,
                mime_type=evidence.mime_type,
                size_bytes=evidence.size_bytes,
                expiry_date=expiry_date,
                notes=notes,
                property_id=property_id,
            )
            self.db.add(document)
            await self.db.flush()
            await self._record(owner, TrustEventKind.DOCUMENT_SUBMITTED, document)
            return document

        document = await in_subject_transaction(self.db, unit)
        logger.info(f"Document {document.id} ({document_type.value}) submitted by {owner_id}")
        await self.audit.record(owner_id, AuditAction.SUBMIT_DOCUMENT, ctx, document_id=document.id)
        await self.notifier.notify(
            owner_id,
            NotificationType.DOCUMENT_SUBMITTED,
            "Document received",
            f"Your {document_type.value} has been submitted for review.",
            {"document_id": str(document.id)},
        )
        return document

    async def mark_under_review(
        self, admin_id: UUID, document_id: UUID, ctx: Optional[RequestContext] = None
    ) -> Document:
        async def unit() -> Document:
            document = await self._load(document_id)
            if document.status != DocumentStatus.PENDING:
                raise StateConflictError(
                    f"Only pending documents can be put under review (status: {document.status.value})"
                )
            owner = await self.ledger.load(document.user_id)
            self._begin_review(document, admin_id)
            await self._record(owner, TrustEventKind.DOCUMENT_UNDER_REVIEW, document)
            return document

        document = await in_subject_transaction(self.db, unit)
        await self.audit.record(
            document.user_id, AuditAction.REVIEW_DOCUMENT, ctx, admin_id=admin_id, document_id=document.id
        )
        await self.notifier.notify(
            document.user_id,
            NotificationType.DOCUMENT_UNDER_REVIEW,
            "Document under review",
            f"Your {document.document_type.value} is being reviewed by our team.",
            {"document_id": str(document.id)},
        )
        return document

    async def decide(
        self,
        admin_id: UUID,
        document_id: UUID,
        outcome,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> DocumentDecision:
        try:
            requested = DocumentStatus(outcome)
        except ValueError:
            requested = None
        if requested not in (DocumentStatus.VERIFIED, DocumentStatus.REJECTED):
            raise ValidationError("Outcome must be 'verified' or 'rejected'", code="invalid_outcome")
        reason = (reason or "").strip() or None
        if requested == DocumentStatus.REJECTED and not reason:
            raise ValidationError("Rejection reason is required", code="reason_required")

        async def unit() -> DocumentDecision:
            document = await self._load(document_id)
            owner = await self.ledger.load(document.user_id)

            passed_through_review = False
            if document.status == DocumentStatus.PENDING:
                self._begin_review(document, admin_id)
                await self._record(owner, TrustEventKind.DOCUMENT_UNDER_REVIEW, document)
                passed_through_review = True
            if document.status != DocumentStatus.UNDER_REVIEW:
                raise StateConflictError(f"Document is already {document.status.value}")

            if requested == DocumentStatus.VERIFIED and is_expired(document):
                tag, final_status, final_reason = (
                    DecisionOutcome.REJECTED_EXPIRED, DocumentStatus.REJECTED, EXPIRED_REASON,
                )
            elif requested == DocumentStatus.VERIFIED:
                tag, final_status, final_reason = DecisionOutcome.VERIFIED, DocumentStatus.VERIFIED, None
            else:
                tag, final_status, final_reason = (
                    DecisionOutcome.REJECTED_BY_ADMIN, DocumentStatus.REJECTED, reason,
                )

            now = utcnow()
            document.status = final_status
            document.reviewer_id = admin_id
            document.reviewed_at = now
            document.rejection_reason = final_reason
            if notes is not None:
                document.notes = notes

            await self._apply_sub_record(owner, document, now)
            kind = (
                TrustEventKind.DOCUMENT_VERIFIED
                if final_status == DocumentStatus.VERIFIED
                else TrustEventKind.DOCUMENT_REJECTED
            )
            await self._record(owner, kind, document)
            return DocumentDecision(document, tag, final_reason, passed_through_review)

        decision = await in_subject_transaction(self.db, unit)
        document = decision.document

        if decision.overridden:
            logger.info(
                f"Approval of document {document.id} overridden: expired on {document.expiry_date}"
            )
        if decision.passed_through_review:
            await self.audit.record(
                document.user_id, AuditAction.REVIEW_DOCUMENT, ctx, admin_id=admin_id, document_id=document.id
            )

        action = {
            DecisionOutcome.VERIFIED: AuditAction.VERIFY_DOCUMENT,
            DecisionOutcome.REJECTED_BY_ADMIN: AuditAction.REJECT_DOCUMENT,
            DecisionOutcome.REJECTED_EXPIRED: AuditAction.REJECT_DOCUMENT_EXPIRED,
        }[decision.outcome]
        await self.audit.record(
            document.user_id, action, ctx, admin_id=admin_id, reason=decision.reason, document_id=document.id
        )

        if decision.outcome == DecisionOutcome.VERIFIED:
            await self.notifier.notify(
                document.user_id,
                NotificationType.DOCUMENT_VERIFIED,
                "Document verified",
                f"Your {document.document_type.value} has been verified.",
                {"document_id": str(document.id)},
            )
        else:
            await self.notifier.notify(
                document.user_id,
                NotificationType.DOCUMENT_REJECTED,
                "Document rejected",
                f"Your {document.document_type.value} was rejected. Reason: {decision.reason}",
                {"document_id": str(document.id), "reason": decision.reason},
            )
        return decision

    async def request_reverification(
        self, owner_id: UUID, document_id: UUID, ctx: Optional[RequestContext] = None
    ) -> Document:
        async def unit() -> Document:
            document = await self._load(document_id)
            if document.user_id != owner_id:
                raise AuthorizationError("Only the document owner can request re-verification")
            expired_verified = document.status == DocumentStatus.VERIFIED and is_expired(document)
            if document.status != DocumentStatus.REJECTED and not expired_verified:
                raise StateConflictError(
                    f"Only rejected or expired documents can be re-verified (status: {document.status.value})"
                )

            owner = await self.ledger.load(owner_id)
            document.status = DocumentStatus.PENDING
            document.reviewer_id = None
            document.reviewed_at = None
            document.rejection_reason = None
            await self._apply_sub_record(owner, document, utcnow())
            await self._record(owner, TrustEventKind.DOCUMENT_REVERIFICATION, document)
            return document

        document = await in_subject_transaction(self.db, unit)
        await self.audit.record(owner_id, AuditAction.REQUEST_REVERIFICATION, ctx, document_id=document.id)
        await self.notifier.notify(
            owner_id,
            NotificationType.DOCUMENT_REVERIFICATION,
            "Re-verification requested",
            f"Your {document.document_type.value} is back in the review queue.",
            {"document_id": str(document.id)},
        )
        return document

    async def delete(
        self, actor_id: UUID, document_id: UUID, ctx: Optional[RequestContext] = None
    ) -> DeletedDocument:
        actor_is_admin = False

        async def unit() -> DeletedDocument:
            nonlocal actor_is_admin
            document = await self._load(document_id)
            actor = await self.db.get(User, actor_id)
            actor_is_admin = actor is not None and actor.role == UserRole.ADMIN
            if document.user_id != actor_id and not actor_is_admin:
                raise AuthorizationError("Access denied")
            if document.status == DocumentStatus.VERIFIED:
                raise StateConflictError("Cannot delete verified documents")

            owner = await self.ledger.load(document.user_id)
            deleted = DeletedDocument(
                id=document.id,
                owner_id=owner.id,
                storage_key=document.storage_key,
                document_type=DocumentType(document.document_type),
            )
            await self._record(owner, TrustEventKind.DOCUMENT_DELETED, document)
            await self.db.delete(document)
            return deleted

        deleted = await in_subject_transaction(self.db, unit)
        await self.audit.record(
            deleted.owner_id,
            AuditAction.DELETE_DOCUMENT,
            ctx,
            admin_id=actor_id if actor_is_admin else None,
            document_id=deleted.id,
        )
        await self.notifier.notify(
            deleted.owner_id,
            NotificationType.DOCUMENT_DELETED,
            "Document deleted",
            f"Your {deleted.document_type.value} was removed.",
            {"document_id": str(deleted.id)},
        )
        return deleted
