"""
services/verification/router.py
Read-only view of a subject's trust status.
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from services.verification.engine import VerificationEngine, get_verification_engine
from shared.errors import raise_for_result
from shared.middleware.auth import require_admin, require_user
from shared.models.models import User
from shared.schemas.schemas import VerificationStatusResponse

router = APIRouter(prefix="/verification", tags=["Verification"])


@router.get("/status", response_model=VerificationStatusResponse)
async def my_verification_status(
    current_user: User = Depends(require_user),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    return raise_for_result(await engine.get_verification_status(current_user.id))


@router.get("/admin/status/{subject_id}", response_model=VerificationStatusResponse)
async def subject_verification_status(
    subject_id: UUID,
    current_user: User = Depends(require_admin),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    return raise_for_result(await engine.get_verification_status(subject_id))
