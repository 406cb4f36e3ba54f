"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the verification service.
"""

import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Documents ─────────────────────────────────────────────────

class EvidenceSchema(BaseSchema):
    storage_key: str = Field(..., min_length=1, max_length=512)
    original_name: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., max_length=100)
    size_bytes: int = Field(..., gt=0)


class DocumentSubmitRequest(BaseSchema):
    document_type: str = Field(..., max_length=50)
    evidence: EvidenceSchema
    expiry_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=1000)
    property_id: Optional[uuid.UUID] = None


class DocumentDecisionRequest(BaseSchema):
    outcome: str = Field(..., pattern=r"^(verified|rejected)$")
    reason: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)


class DocumentResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    property_id: Optional[uuid.UUID]
    document_type: str
    category: str
    status: str
    storage_key: str
    original_name: str
    mime_type: str
    size_bytes: int
    notes: Optional[str]
    expiry_date: Optional[date]
    reviewer_id: Optional[uuid.UUID]
    reviewed_at: Optional[datetime]
    rejection_reason: Optional[str]
    created_at: datetime


class DocumentDecisionResponse(BaseSchema):
    document: DocumentResponse
    outcome: str
    reason: Optional[str]
    overridden: bool


class DocumentDeletedResponse(BaseSchema):
    id: uuid.UUID
    storage_key: str
    message: str = "Document deleted"


# ── Aadhaar OTP ───────────────────────────────────────────────

class OtpRequest(BaseSchema):
    aadhaar_number: str = Field(..., max_length=20)


class OtpRequestResponse(BaseSchema):
    request_id: str
    provider_ref: str


class OtpVerifyRequest(BaseSchema):
    request_id: str = Field(..., min_length=1, max_length=128)
    otp: str = Field(..., min_length=4, max_length=10)


class OtpVerifyResponse(BaseSchema):
    provider_ref: str
    verified_at: datetime
    verification_state: str


# ── College email ─────────────────────────────────────────────

class CollegeEmailRequest(BaseSchema):
    email: str = Field(..., max_length=255)


class CollegeEmailRequestResponse(BaseSchema):
    message: str = "Verification email sent"
    domain: str
    expires_at: datetime


class CollegeEmailConfirmResponse(BaseSchema):
    status: str
    domain: str
    verification_state: Optional[str]
    already_verified: bool


class EmailDecisionRequest(BaseSchema):
    user_id: Optional[uuid.UUID] = None
    token: Optional[str] = Field(None, max_length=128)
    reason: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def _target_required(self):
        if not self.user_id and not self.token:
            raise ValueError("user_id or token is required")
        return self


class EmailVerificationResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    email: str
    domain: str
    status: str
    verified: bool
    verified_at: Optional[datetime]
    decided_by_id: Optional[uuid.UUID]
    decided_at: Optional[datetime]
    decision_reason: Optional[str]
    created_at: datetime


# ── Status ────────────────────────────────────────────────────

class DocumentCounts(BaseSchema):
    total: int
    pending: int
    verified: int
    rejected: int


class VerificationStatusResponse(BaseSchema):
    subject_id: uuid.UUID
    identity: bool
    address: bool
    property: bool
    overall: str
    counts: DocumentCounts
    verification_state: str
    aadhaar_verified: bool
    is_fully_verified: bool


# ── Audit ─────────────────────────────────────────────────────

class AuditEntryResponse(BaseSchema):
    id: uuid.UUID
    subject_id: uuid.UUID
    admin_id: Optional[uuid.UUID]
    action: str
    reason: Optional[str]
    document_id: Optional[uuid.UUID]
    provider_ref: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
