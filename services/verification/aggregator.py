"""
services/verification/aggregator.py
Derives the canonical verification_state from a subject's ordered event log.

The merge is last-writer-wins over actions, not a monotonic join: an admin
decision on a document or an email overwrites whatever state came before,
and an Aadhaar verification sets aadhaar_verified regardless of the
student/intern distinction. derive_state() is a plain left fold so the same
log always produces the same state.

The fold also remembers which identity documents are currently verified and
whether a verified_student came from the email track. Re-verifying the
identity document a verified_* state rests on falls back to the latest
identity document still verified, or to document_uploaded when none is.
"""

import logging
from dataclasses import dataclass, replace
from functools import reduce
from typing import Iterable, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import NotFoundError
from shared.models.models import (
    STUDENT_IDENTITY_TYPES,
    DocumentCategory,
    DocumentType,
    TrustEventKind,
    User,
    VerificationEvent,
    VerificationState,
)
from shared.utils.clock import utcnow

logger = logging.getLogger(__name__)

_DOCUMENT_BACKED = (VerificationState.VERIFIED_STUDENT, VerificationState.VERIFIED_INTERN)


@dataclass(frozen=True)
class TrustEvent:
    kind: TrustEventKind
    document_type: Optional[str] = None
    category: Optional[str] = None
    document_id: Optional[UUID] = None

    @property
    def is_identity(self) -> bool:
        return self.category == DocumentCategory.IDENTITY.value

    @classmethod
    def from_row(cls, row: VerificationEvent) -> "TrustEvent":
        return cls(
            kind=TrustEventKind(row.kind),
            document_type=row.document_type,
            category=row.category,
            document_id=row.document_id,
        )


@dataclass(frozen=True)
class Standing:
    """Fold accumulator."""
    state: VerificationState = VerificationState.UNVERIFIED
    # (document_id, document_type) of verified identity documents, oldest first
    verified_identity: Tuple[Tuple[Optional[UUID], Optional[str]], ...] = ()
    email_backed: bool = False

    def without(self, document_id: Optional[UUID]) -> Tuple[Tuple[Optional[UUID], Optional[str]], ...]:
        return tuple(entry for entry in self.verified_identity if entry[0] != document_id)


def _identity_outcome(document_type: Optional[str]) -> VerificationState:
    try:
        is_student = DocumentType(document_type) in STUDENT_IDENTITY_TYPES
    except ValueError:
        is_student = False
    return VerificationState.VERIFIED_STUDENT if is_student else VerificationState.VERIFIED_INTERN


def _set(standing: Standing, state: VerificationState, email_backed: bool = False, **changes) -> Standing:
    return replace(standing, state=state, email_backed=email_backed, **changes)


def _reverify_identity(standing: Standing, event: TrustEvent) -> Standing:
    remaining = standing.without(event.document_id)
    if standing.state == VerificationState.VERIFICATION_FAILED:
        return _set(standing, VerificationState.DOCUMENT_UPLOADED, verified_identity=remaining)
    if standing.state in _DOCUMENT_BACKED and not standing.email_backed:
        if remaining:
            state = _identity_outcome(remaining[-1][1])
        else:
            state = VerificationState.DOCUMENT_UPLOADED
        return _set(standing, state, verified_identity=remaining)
    return replace(standing, verified_identity=remaining)


def apply_event(standing: Standing, event: TrustEvent) -> Standing:
    """One step of the fold."""
    kind = event.kind
    state = standing.state

    if kind == TrustEventKind.DOCUMENT_SUBMITTED:
        if state == VerificationState.UNVERIFIED:
            return _set(standing, VerificationState.DOCUMENT_UPLOADED)
        return standing

    if kind == TrustEventKind.DOCUMENT_VERIFIED:
        if not event.is_identity:
            return standing
        verified = standing.without(event.document_id) + ((event.document_id, event.document_type),)
        return _set(standing, _identity_outcome(event.document_type), verified_identity=verified)

    if kind == TrustEventKind.DOCUMENT_REJECTED:
        if not event.is_identity:
            return standing
        return _set(
            standing, VerificationState.VERIFICATION_FAILED, verified_identity=standing.without(event.document_id)
        )

    if kind == TrustEventKind.DOCUMENT_REVERIFICATION:
        return _reverify_identity(standing, event) if event.is_identity else standing

    if kind in (TrustEventKind.EMAIL_AUTO_APPROVED, TrustEventKind.EMAIL_ADMIN_APPROVED):
        return _set(standing, VerificationState.VERIFIED_STUDENT, email_backed=True)

    if kind == TrustEventKind.EMAIL_PENDING_ADMIN:
        return _set(standing, VerificationState.EMAIL_VERIFIED)

    if kind == TrustEventKind.EMAIL_ADMIN_REJECTED:
        return _set(standing, VerificationState.VERIFICATION_FAILED)

    if kind == TrustEventKind.AADHAAR_VERIFIED:
        return _set(standing, VerificationState.AADHAAR_VERIFIED)

    # DOCUMENT_UNDER_REVIEW, DOCUMENT_DELETED
    return standing


def derive_state(events: Iterable[TrustEvent]) -> VerificationState:
    return reduce(apply_event, events, Standing()).state


class SubjectLedger:
    """
    Per-subject writer. Loads the subject, appends trust events and
    recomputes verification_state; nothing else assigns that column.

    Every record() call touches state_recomputed_at so the flush issues a
    version-checked UPDATE on users. Two concurrent units of work on the same
    subject therefore cannot both commit: the loser gets StaleDataError and
    the engine re-runs it.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load(self, subject_id: UUID) -> User:
        subject = await self.db.scalar(
            select(User).where(User.id == subject_id).execution_options(populate_existing=True)
        )
        if subject is None:
            raise NotFoundError("Subject not found", code="subject_not_found")
        return subject

    async def record(
        self,
        subject: User,
        kind: TrustEventKind,
        document_id: Optional[UUID] = None,
        document_type: Optional[str] = None,
        category: Optional[str] = None,
    ) -> VerificationState:
        self.db.add(VerificationEvent(
            subject_id=subject.id,
            kind=kind,
            document_id=document_id,
            document_type=document_type,
            category=category,
        ))
        await self.db.flush()
        return await self.recompute(subject)

    async def recompute(self, subject: User) -> VerificationState:
        rows = await self.db.scalars(
            select(VerificationEvent)
            .where(VerificationEvent.subject_id == subject.id)
            .order_by(VerificationEvent.id.asc())
        )
        new_state = derive_state(TrustEvent.from_row(row) for row in rows)
        if subject.verification_state != new_state:
            logger.info("Subject %s verification_state -> %s", subject.id, new_state.value)
        subject.verification_state = new_state
        subject.state_recomputed_at = utcnow()
        return new_state
