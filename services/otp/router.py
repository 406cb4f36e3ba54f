"""
services/otp/router.py
Aadhaar verification over OTP. The number is passed to the provider and
dropped; only the provider reference is kept on the subject.
"""

from fastapi import APIRouter, Depends, Request

from services.audit.log import RequestContext
from services.verification.engine import VerificationEngine, get_verification_engine
from shared.errors import raise_for_result
from shared.middleware.auth import require_user
from shared.models.models import User
from shared.schemas.schemas import OtpRequest, OtpRequestResponse, OtpVerifyRequest, OtpVerifyResponse

router = APIRouter(prefix="/aadhaar", tags=["Aadhaar"])


@router.post("/request-otp", response_model=OtpRequestResponse)
async def request_otp(
    data: OtpRequest,
    request: Request,
    current_user: User = Depends(require_user),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    result = await engine.request_otp_challenge(
        current_user.id, data.aadhaar_number, ctx=RequestContext.from_request(request)
    )
    ticket = raise_for_result(result)
    return OtpRequestResponse(request_id=ticket.request_id, provider_ref=ticket.provider_ref)


@router.post("/verify-otp", response_model=OtpVerifyResponse)
async def verify_otp(
    data: OtpVerifyRequest,
    request: Request,
    current_user: User = Depends(require_user),
    engine: VerificationEngine = Depends(get_verification_engine),
):
    result = await engine.verify_otp_challenge(
        current_user.id, data.request_id, data.otp, ctx=RequestContext.from_request(request)
    )
    verified = raise_for_result(result)
    return OtpVerifyResponse(
        provider_ref=verified.provider_ref,
        verified_at=verified.verified_at,
        verification_state=verified.verification_state.value,
    )
