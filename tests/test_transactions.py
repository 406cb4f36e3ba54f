"""
tests/test_transactions.py
Optimistic-lock retry around per-subject units of work.
"""

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.verification.aggregator import SubjectLedger
from services.verification.transactions import in_subject_transaction
from shared.errors import NotFoundError, StateConflictError
from shared.models.models import TrustEventKind, User, VerificationEvent, VerificationState


async def _bump_version(db: AsyncSession, subject_id) -> None:
    """Simulate another writer committing between our read and our write."""
    await db.execute(
        update(User)
        .where(User.id == subject_id)
        .values(version=User.version + 1)
        .execution_options(synchronize_session=False)
    )


async def _event_count(db: AsyncSession, subject_id) -> int:
    return await db.scalar(
        select(func.count()).select_from(VerificationEvent).where(VerificationEvent.subject_id == subject_id)
    )


@pytest.mark.asyncio
async def test_stale_write_is_retried_from_a_fresh_read(db: AsyncSession, student: User):
    student_id = student.id
    ledger = SubjectLedger(db)
    calls = 0

    async def unit():
        nonlocal calls
        calls += 1
        subject = await ledger.load(student_id)
        if calls == 1:
            await _bump_version(db, student_id)
        await ledger.record(subject, TrustEventKind.AADHAAR_VERIFIED)
        return subject

    subject = await in_subject_transaction(db, unit)

    assert calls == 2
    assert subject.verification_state == VerificationState.AADHAAR_VERIFIED
    assert await _event_count(db, student_id) == 1


@pytest.mark.asyncio
async def test_persistent_conflict_becomes_state_conflict(db: AsyncSession, student: User):
    student_id = student.id
    ledger = SubjectLedger(db)
    calls = 0

    async def unit():
        nonlocal calls
        calls += 1
        subject = await ledger.load(student_id)
        await _bump_version(db, student_id)
        await ledger.record(subject, TrustEventKind.AADHAAR_VERIFIED)

    with pytest.raises(StateConflictError) as exc_info:
        await in_subject_transaction(db, unit)

    assert exc_info.value.code == "concurrent_update"
    assert calls == settings.SUBJECT_WRITE_MAX_RETRIES
    assert await _event_count(db, student_id) == 0


@pytest.mark.asyncio
async def test_domain_errors_are_not_retried(db: AsyncSession, student: User):
    student_id = student.id
    calls = 0

    async def unit():
        nonlocal calls
        calls += 1
        db.add(VerificationEvent(subject_id=student_id, kind=TrustEventKind.DOCUMENT_SUBMITTED))
        await db.flush()
        raise NotFoundError("Document not found")

    with pytest.raises(NotFoundError):
        await in_subject_transaction(db, unit)

    assert calls == 1
    assert await _event_count(db, student_id) == 0
