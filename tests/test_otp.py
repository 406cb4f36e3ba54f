"""
tests/test_otp.py
Tests for the Aadhaar OTP track: providers, challenge stores, the provider
registry, the HTTP gateway backend and the routes.
"""

import asyncio
import json
import uuid
from datetime import timedelta

import httpx
import pytest
from httpx import AsyncClient
from prometheus_client import REGISTRY
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.otp.providers import (
    HttpOtpProvider,
    MockOtpProvider,
    build_otp_provider,
)
from services.otp.store import Challenge, InMemoryChallengeStore
from services.verification.engine import VerificationEngine
from shared.errors import (
    ExpiredChallenge,
    InvalidCode,
    InvalidFormat,
    InvalidRequest,
    NotFoundError,
    ProviderError,
)
from shared.models.models import User, VerificationAudit, VerificationState
from shared.utils.clock import utcnow
from tests.conftest import auth_headers

AADHAAR = "2345 6789 0124"


async def _code(provider: MockOtpProvider, request_id: str) -> str:
    challenge = await provider.store.get(request_id)
    return challenge.code


# ── Mock provider ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_request_challenge_returns_ticket(otp_provider: MockOtpProvider):
    ticket = await otp_provider.request_challenge(AADHAAR)

    assert ticket.request_id
    assert ticket.provider_ref == f"mock-aadhaar-{ticket.request_id}"
    code = await _code(otp_provider, ticket.request_id)
    assert len(code) == 6 and code.isdigit()


@pytest.mark.asyncio
@pytest.mark.parametrize("number", ["", "12345", "1234567890123", "abcd efgh ijkl"])
async def test_request_challenge_rejects_bad_format(otp_provider: MockOtpProvider, number: str):
    with pytest.raises(InvalidFormat):
        await otp_provider.request_challenge(number)
    assert len(otp_provider.store) == 0


@pytest.mark.asyncio
async def test_strict_checksum_rejects_bad_check_digit():
    provider = MockOtpProvider(InMemoryChallengeStore(), strict_checksum=True)
    with pytest.raises(InvalidFormat):
        await provider.request_challenge("234567890123")


@pytest.mark.asyncio
async def test_strict_checksum_accepts_valid_number():
    provider = MockOtpProvider(InMemoryChallengeStore(), strict_checksum=True)
    ticket = await provider.request_challenge("2345-6789-0124")
    assert ticket.request_id


@pytest.mark.asyncio
async def test_verify_challenge_succeeds_once(otp_provider: MockOtpProvider):
    ticket = await otp_provider.request_challenge(AADHAAR)
    code = await _code(otp_provider, ticket.request_id)

    confirmation = await otp_provider.verify_challenge(ticket.request_id, code)
    assert confirmation.provider_ref == ticket.provider_ref

    with pytest.raises(InvalidRequest):
        await otp_provider.verify_challenge(ticket.request_id, code)


@pytest.mark.asyncio
async def test_wrong_code_keeps_challenge_open(otp_provider: MockOtpProvider):
    ticket = await otp_provider.request_challenge(AADHAAR)
    code = await _code(otp_provider, ticket.request_id)
    wrong = "000000" if code != "000000" else "111111"

    with pytest.raises(InvalidCode):
        await otp_provider.verify_challenge(ticket.request_id, wrong)

    confirmation = await otp_provider.verify_challenge(ticket.request_id, code)
    assert confirmation.provider_ref == ticket.provider_ref


@pytest.mark.asyncio
async def test_unknown_request_id(otp_provider: MockOtpProvider):
    with pytest.raises(InvalidRequest):
        await otp_provider.verify_challenge("does-not-exist", "123456")


@pytest.mark.asyncio
async def test_expired_challenge(otp_provider: MockOtpProvider):
    await otp_provider.store.save(
        Challenge(request_id="old", code="123456", expires_at=utcnow() - timedelta(seconds=1))
    )

    with pytest.raises(ExpiredChallenge):
        await otp_provider.verify_challenge("old", "123456")
    # Expired challenges are removed on first touch
    with pytest.raises(InvalidRequest):
        await otp_provider.verify_challenge("old", "123456")


@pytest.mark.asyncio
async def test_concurrent_verifications_only_one_wins(otp_provider: MockOtpProvider):
    ticket = await otp_provider.request_challenge(AADHAAR)
    code = await _code(otp_provider, ticket.request_id)

    results = await asyncio.gather(
        *[otp_provider.verify_challenge(ticket.request_id, code) for _ in range(5)],
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert all(isinstance(f, InvalidRequest) for f in failures)


@pytest.mark.asyncio
async def test_providers_do_not_share_challenges():
    first = MockOtpProvider(InMemoryChallengeStore())
    second = MockOtpProvider(InMemoryChallengeStore())
    ticket = await first.request_challenge(AADHAAR)

    with pytest.raises(InvalidRequest):
        await second.verify_challenge(ticket.request_id, await _code(first, ticket.request_id))


# ── Registry ───────────────────────────────────────────────────────────────────

def _fallbacks() -> float:
    return REGISTRY.get_sample_value("verification_otp_provider_fallbacks_total") or 0.0


def test_build_known_provider():
    provider = build_otp_provider("mock", InMemoryChallengeStore())
    assert isinstance(provider, MockOtpProvider)


def test_unknown_provider_falls_back_to_mock():
    before = _fallbacks()
    provider = build_otp_provider("digilocker", InMemoryChallengeStore())

    assert isinstance(provider, MockOtpProvider)
    assert _fallbacks() == before + 1


def test_misconfigured_provider_falls_back_to_mock():
    """The http backend needs a base URL and an API key."""
    before = _fallbacks()
    provider = build_otp_provider("http", InMemoryChallengeStore(), base_url="", api_key="")

    assert isinstance(provider, MockOtpProvider)
    assert _fallbacks() == before + 1


# ── HTTP gateway backend ───────────────────────────────────────────────────────

def _gateway(handler) -> HttpOtpProvider:
    return HttpOtpProvider(
        InMemoryChallengeStore(),
        base_url="https://otp.example.test",
        api_key="test-key",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_http_provider_round_trip():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.headers.get("x-api-key"), json.loads(request.content)))
        if request.url.path == "/otp/request":
            return httpx.Response(200, json={"request_id": "gw-1", "reference": "ref-req"})
        return httpx.Response(200, json={"reference": "ref-ok"})

    provider = _gateway(handler)
    ticket = await provider.request_challenge(AADHAAR)
    confirmation = await provider.verify_challenge(ticket.request_id, "654321")

    assert ticket.request_id == "gw-1"
    assert confirmation.provider_ref == "ref-ok"
    assert seen[0] == ("/otp/request", "test-key", {"id_number": "234567890124"})
    assert seen[1][2] == {"request_id": "gw-1", "otp": "654321"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, error",
    [(400, InvalidCode), (422, InvalidCode), (404, InvalidRequest), (410, ExpiredChallenge), (401, ProviderError)],
)
async def test_http_provider_status_mapping(status_code, error):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/otp/request":
            return httpx.Response(200, json={"request_id": "gw-2"})
        return httpx.Response(status_code, json={})

    provider = _gateway(handler)
    ticket = await provider.request_challenge(AADHAAR)

    with pytest.raises(error):
        await provider.verify_challenge(ticket.request_id, "123456")


@pytest.mark.asyncio
async def test_http_provider_retries_then_gives_up():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(503)

    provider = _gateway(handler)
    with pytest.raises(ProviderError):
        await provider.request_challenge(AADHAAR)
    assert len(calls) == HttpOtpProvider.MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_http_provider_recovers_from_transient_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused")
        return httpx.Response(200, json={"request_id": "gw-3"})

    ticket = await _gateway(handler).request_challenge(AADHAAR)
    assert ticket.request_id == "gw-3"
    assert len(calls) == 2


# ── Engine ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_engine_verifies_aadhaar(
    engine: VerificationEngine, otp_provider: MockOtpProvider, student: User, db: AsyncSession
):
    ticket = (await engine.request_otp_challenge(student.id, AADHAAR)).value
    code = await _code(otp_provider, ticket.request_id)

    result = await engine.verify_otp_challenge(student.id, ticket.request_id, code)

    assert result.ok
    assert result.value.provider_ref == ticket.provider_ref
    await db.refresh(student)
    assert student.aadhaar_verified is True
    assert student.aadhaar_provider_ref == ticket.provider_ref
    assert student.verification_state == VerificationState.AADHAAR_VERIFIED

    actions = set(await db.scalars(
        select(VerificationAudit.action).where(VerificationAudit.subject_id == student.id)
    ))
    assert actions == {"request_otp", "verify_aadhaar"}


@pytest.mark.asyncio
async def test_engine_failed_verification_leaves_subject_untouched(
    engine: VerificationEngine, student: User, db: AsyncSession
):
    ticket = (await engine.request_otp_challenge(student.id, AADHAAR)).value

    result = await engine.verify_otp_challenge(student.id, ticket.request_id, "not-it")

    assert isinstance(result.error, InvalidCode)
    await db.refresh(student)
    assert student.aadhaar_verified is False
    assert student.verification_state == VerificationState.UNVERIFIED


@pytest.mark.asyncio
async def test_engine_never_stores_the_number(engine: VerificationEngine, student: User, db: AsyncSession):
    await engine.request_otp_challenge(student.id, AADHAAR)

    entries = (await db.scalars(select(VerificationAudit))).all()
    for entry in entries:
        assert "234567890124" not in (entry.provider_ref or "")
        assert "234567890124" not in (entry.reason or "")


@pytest.mark.asyncio
async def test_engine_unknown_subject(engine: VerificationEngine):
    result = await engine.request_otp_challenge(uuid.uuid4(), AADHAAR)
    assert isinstance(result.error, NotFoundError)


# ── HTTP ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_otp_routes(client: AsyncClient, otp_provider: MockOtpProvider, student: User):
    headers = auth_headers(student)
    response = await client.post(
        "/aadhaar/request-otp", json={"aadhaar_number": AADHAAR}, headers=headers
    )
    assert response.status_code == 200
    request_id = response.json()["request_id"]
    code = await _code(otp_provider, request_id)
    wrong = "000000" if code != "000000" else "111111"

    response = await client.post(
        "/aadhaar/verify-otp",
        json={"request_id": request_id, "otp": wrong},
        headers=headers,
    )
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "invalid_code"

    response = await client.post(
        "/aadhaar/verify-otp",
        json={"request_id": request_id, "otp": code},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["verification_state"] == "aadhaar_verified"


@pytest.mark.asyncio
async def test_otp_route_status_codes(client: AsyncClient, otp_provider: MockOtpProvider, student: User):
    headers = auth_headers(student)
    response = await client.post(
        "/aadhaar/request-otp", json={"aadhaar_number": "123"}, headers=headers
    )
    assert response.status_code == 422

    response = await client.post(
        "/aadhaar/verify-otp", json={"request_id": "missing", "otp": "123456"}, headers=headers
    )
    assert response.status_code == 404

    await otp_provider.store.save(
        Challenge(request_id="stale", code="123456", expires_at=utcnow() - timedelta(minutes=1))
    )
    response = await client.post(
        "/aadhaar/verify-otp", json={"request_id": "stale", "otp": "123456"}, headers=headers
    )
    assert response.status_code == 410
