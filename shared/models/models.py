"""
shared/models/models.py
SQLAlchemy ORM models for the verification service.
UUID primary keys throughout; portable column types so the same models run on
PostgreSQL and SQLite.
"""

import uuid
from datetime import date, datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base
from shared.utils.clock import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    STUDENT = "STUDENT"
    OWNER = "OWNER"
    ADMIN = "ADMIN"


class VerificationState(str, PyEnum):
    """Canonical trust status. Only the aggregator assigns it."""
    UNVERIFIED = "unverified"
    EMAIL_VERIFIED = "email_verified"
    DOCUMENT_UPLOADED = "document_uploaded"
    VERIFIED_STUDENT = "verified_student"
    VERIFIED_INTERN = "verified_intern"
    AADHAAR_VERIFIED = "aadhaar_verified"
    VERIFICATION_FAILED = "verification_failed"


class DocumentCategory(str, PyEnum):
    IDENTITY = "identity"
    ADDRESS = "address"
    PROPERTY = "property"
    OTHER = "other"


class DocumentType(str, PyEnum):
    # Student identity
    STUDENT_ID = "student_id"
    COLLEGE_ID = "college_id"
    # National ID: accepted only through the Aadhaar OTP track
    AADHAR = "aadhar"
    AADHAAR = "aadhaar"
    # General identity
    PAN = "pan"
    PASSPORT = "passport"
    DRIVING_LICENSE = "driving_license"
    # Address proof
    UTILITY_BILL = "utility_bill"
    ELECTRICITY_BILL = "electricity_bill"
    BANK_STATEMENT = "bank_statement"
    RENT_AGREEMENT = "rent_agreement"
    # Property owner
    PROPERTY_DEED = "property_deed"
    PROPERTY_TAX = "property_tax"
    OWNERSHIP_CERTIFICATE = "ownership_certificate"
    PROPERTY_OWNERSHIP = "property_ownership"
    RENTAL_AGREEMENT = "rental_agreement"
    NOC = "noc"
    ENCUMBRANCE_CERTIFICATE = "encumbrance_certificate"
    OTHER = "other"


NATIONAL_ID_TYPES = frozenset({DocumentType.AADHAR, DocumentType.AADHAAR})
STUDENT_IDENTITY_TYPES = frozenset({DocumentType.STUDENT_ID, DocumentType.COLLEGE_ID})

DOCUMENT_CATEGORIES = {
    DocumentType.STUDENT_ID: DocumentCategory.IDENTITY,
    DocumentType.COLLEGE_ID: DocumentCategory.IDENTITY,
    DocumentType.AADHAR: DocumentCategory.IDENTITY,
    DocumentType.AADHAAR: DocumentCategory.IDENTITY,
    DocumentType.PAN: DocumentCategory.IDENTITY,
    DocumentType.PASSPORT: DocumentCategory.IDENTITY,
    DocumentType.DRIVING_LICENSE: DocumentCategory.IDENTITY,
    DocumentType.UTILITY_BILL: DocumentCategory.ADDRESS,
    DocumentType.ELECTRICITY_BILL: DocumentCategory.ADDRESS,
    DocumentType.BANK_STATEMENT: DocumentCategory.ADDRESS,
    DocumentType.RENT_AGREEMENT: DocumentCategory.ADDRESS,
    DocumentType.PROPERTY_DEED: DocumentCategory.PROPERTY,
    DocumentType.PROPERTY_TAX: DocumentCategory.PROPERTY,
    DocumentType.OWNERSHIP_CERTIFICATE: DocumentCategory.PROPERTY,
    DocumentType.PROPERTY_OWNERSHIP: DocumentCategory.PROPERTY,
    DocumentType.RENTAL_AGREEMENT: DocumentCategory.PROPERTY,
    DocumentType.NOC: DocumentCategory.PROPERTY,
    DocumentType.ENCUMBRANCE_CERTIFICATE: DocumentCategory.PROPERTY,
    DocumentType.OTHER: DocumentCategory.OTHER,
}


class DocumentStatus(str, PyEnum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    VERIFIED = "verified"
    REJECTED = "rejected"


class EmailVerificationStatus(str, PyEnum):
    REQUESTED = "requested"
    AUTO_APPROVED = "auto_approved"
    PENDING_ADMIN = "pending_admin"
    ADMIN_APPROVED = "admin_approved"
    ADMIN_REJECTED = "admin_rejected"


class TrustEventKind(str, PyEnum):
    DOCUMENT_SUBMITTED = "document_submitted"
    DOCUMENT_UNDER_REVIEW = "document_under_review"
    DOCUMENT_VERIFIED = "document_verified"
    DOCUMENT_REJECTED = "document_rejected"
    DOCUMENT_REVERIFICATION = "document_reverification"
    DOCUMENT_DELETED = "document_deleted"
    EMAIL_AUTO_APPROVED = "email_auto_approved"
    EMAIL_PENDING_ADMIN = "email_pending_admin"
    EMAIL_ADMIN_APPROVED = "email_admin_approved"
    EMAIL_ADMIN_REJECTED = "email_admin_rejected"
    AADHAAR_VERIFIED = "aadhaar_verified"


class AuditAction(str, PyEnum):
    SUBMIT_DOCUMENT = "submit_document"
    REVIEW_DOCUMENT = "review_document"
    VERIFY_DOCUMENT = "verify_document"
    REJECT_DOCUMENT = "reject_document"
    REJECT_DOCUMENT_EXPIRED = "reject_document_expired"
    REQUEST_REVERIFICATION = "request_reverification"
    DELETE_DOCUMENT = "delete_document"
    REQUEST_OTP = "request_otp"
    VERIFY_AADHAAR = "verify_aadhaar"
    REQUEST_EMAIL = "request_email"
    VERIFY_EMAIL = "verify_email"
    VERIFY_EMAIL_PENDING = "verify_email_pending"
    ADMIN_APPROVE_EMAIL = "admin_approve_email"
    ADMIN_REJECT_EMAIL = "admin_reject_email"


class NotificationType(str, PyEnum):
    DOCUMENT_SUBMITTED = "DOCUMENT_SUBMITTED"
    DOCUMENT_UNDER_REVIEW = "DOCUMENT_UNDER_REVIEW"
    DOCUMENT_VERIFIED = "DOCUMENT_VERIFIED"
    DOCUMENT_REJECTED = "DOCUMENT_REJECTED"
    DOCUMENT_REVERIFICATION = "DOCUMENT_REVERIFICATION"
    DOCUMENT_DELETED = "DOCUMENT_DELETED"
    AADHAAR_VERIFIED = "AADHAAR_VERIFIED"
    COLLEGE_VERIFIED = "COLLEGE_VERIFIED"
    COLLEGE_PENDING_ADMIN = "COLLEGE_PENDING_ADMIN"
    COLLEGE_APPROVED = "COLLEGE_APPROVED"
    COLLEGE_REJECTED = "COLLEGE_REJECTED"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """
    The verification subject. Holds one sub-record per track plus the
    canonical verification_state derived by the aggregator.
    The national ID number itself is never stored.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole), nullable=False, default=UserRole.STUDENT)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    college: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Identity sub-record
    identity_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    identity_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    identity_document_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Address sub-record
    address_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    address_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    address_document_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Property sub-record (owners only)
    property_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    property_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    property_document_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Aadhaar OTP track
    aadhaar_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    aadhaar_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    aadhaar_provider_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    verification_state: Mapped[VerificationState] = mapped_column(
        Enum(VerificationState), nullable=False, default=VerificationState.UNVERIFIED
    )
    state_recomputed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Optimistic lock: every subject write is a version-checked UPDATE
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_fully_verified(self) -> bool:
        return self.identity_verified and self.address_verified


class Document(TimestampMixin, Base):
    """Evidence submitted for admin review. Files live in external storage."""
    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    property_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    document_type: Mapped[DocumentType] = mapped_column(Enum(DocumentType), nullable=False)
    category: Mapped[DocumentCategory] = mapped_column(Enum(DocumentCategory), nullable=False)
    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus), nullable=False, default=DocumentStatus.PENDING
    )

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    reviewer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_documents_user_type", "user_id", "document_type"),
        Index("ix_documents_user_status", "user_id", "status"),
        Index("ix_documents_status", "status"),
    )


class EmailVerification(TimestampMixin, Base):
    """One institutional-email verification request. Only the token digest is stored."""
    __tablename__ = "email_verifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[EmailVerificationStatus] = mapped_column(
        Enum(EmailVerificationStatus), nullable=False, default=EmailVerificationStatus.REQUESTED
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    decided_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    decision_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_email_verifications_user_status", "user_id", "status"),
    )


class VerificationEvent(Base):
    """Ordered per-subject event log the aggregator folds into verification_state."""
    __tablename__ = "verification_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[TrustEventKind] = mapped_column(Enum(TrustEventKind), nullable=False)
    document_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    document_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_verification_events_subject_id", "subject_id", "id"),)


class VerificationAudit(Base):
    """Append-only audit trail. Kept even if the subject is later removed."""
    __tablename__ = "verification_audits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    admin_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    provider_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    token_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_verification_audits_subject_id", "subject_id"),
        Index("ix_verification_audits_created_at", "created_at"),
    )


class Notification(TimestampMixin, Base):
    """In-app notification log."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)
