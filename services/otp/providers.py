"""
services/otp/providers.py
Aadhaar OTP provider adapter.

Every backend exposes the same two calls:
    request_challenge(id_number) -> ChallengeTicket(request_id, provider_ref)
    verify_challenge(request_id, code) -> ProviderConfirmation(provider_ref)

Backends register under a name and are selected by OTP_PROVIDER at startup.
A name that is unknown, or a backend that cannot be constructed, falls back
to the mock provider with a warning instead of taking the service down.
The ID number is validated and forwarded, never stored or logged.
"""

import hmac
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Optional, Type

import httpx
from prometheus_client import Counter
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import settings
from services.otp.store import Challenge, ChallengeStore, InMemoryChallengeStore, RedisChallengeStore
from shared.errors import (
    ExpiredChallenge,
    InvalidCode,
    InvalidFormat,
    InvalidRequest,
    ProviderError,
)
from shared.utils.clock import utcnow
from shared.utils.validators import normalize_aadhaar, validate_aadhaar

logger = logging.getLogger(__name__)

PROVIDER_FALLBACKS = Counter(
    "verification_otp_provider_fallbacks_total",
    "Times the configured OTP provider could not be loaded and the mock was used",
)


@dataclass(frozen=True)
class ChallengeTicket:
    request_id: str
    provider_ref: str


@dataclass(frozen=True)
class ProviderConfirmation:
    provider_ref: str


class OtpProvider(ABC):
    name = "base"

    def __init__(
        self,
        store: ChallengeStore,
        ttl_seconds: Optional[int] = None,
        strict_checksum: Optional[bool] = None,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.OTP_TTL_SECONDS
        self.strict_checksum = (
            strict_checksum if strict_checksum is not None else settings.OTP_STRICT_CHECKSUM
        )

    async def request_challenge(self, id_number: str) -> ChallengeTicket:
        if not validate_aadhaar(id_number, strict_checksum=self.strict_checksum):
            raise InvalidFormat("Invalid Aadhaar number format")
        return await self._issue(normalize_aadhaar(id_number))

    async def verify_challenge(self, request_id: str, code: str) -> ProviderConfirmation:
        challenge = await self.store.get(request_id) if request_id else None
        if challenge is None:
            raise InvalidRequest("Invalid or expired requestId")

        if challenge.is_expired:
            await self.store.consume(request_id)
            raise ExpiredChallenge("OTP expired")

        provider_ref = await self._check(challenge, code)

        if not await self.store.consume(request_id):
            # Another caller verified this challenge first
            raise InvalidRequest("Invalid or expired requestId")
        return ProviderConfirmation(provider_ref=provider_ref)

    def _expiry(self):
        return utcnow() + timedelta(seconds=self.ttl_seconds)

    @abstractmethod
    async def _issue(self, id_number: str) -> ChallengeTicket: ...

    @abstractmethod
    async def _check(self, challenge: Challenge, code: str) -> str:
        """Return the provider reference or raise InvalidCode/ProviderError."""


# ── Registry ──────────────────────────────────────────────────

OTP_PROVIDERS: Dict[str, Type[OtpProvider]] = {}


def register_otp_provider(name: str) -> Callable[[Type[OtpProvider]], Type[OtpProvider]]:
    def decorator(cls: Type[OtpProvider]) -> Type[OtpProvider]:
        cls.name = name
        OTP_PROVIDERS[name] = cls
        return cls
    return decorator


# ── Backends ──────────────────────────────────────────────────

@register_otp_provider("mock")
class MockOtpProvider(OtpProvider):
    """Local stand-in: 6-digit codes kept in the injected store."""

    @staticmethod
    def _ref(request_id: str) -> str:
        return f"mock-aadhaar-{request_id}"

    async def _issue(self, id_number: str) -> ChallengeTicket:
        request_id = secrets.token_hex(12)
        code = str(100000 + secrets.randbelow(900000))
        await self.store.save(Challenge(request_id=request_id, code=code, expires_at=self._expiry()))

        if not settings.is_production:
            logger.info(f"[AADHAAR-MOCK] OTP for request {request_id}: {code}")

        return ChallengeTicket(request_id=request_id, provider_ref=self._ref(request_id))

    async def _check(self, challenge: Challenge, code: str) -> str:
        if not code or not hmac.compare_digest(str(challenge.code), str(code)):
            raise InvalidCode("Invalid OTP")
        return self._ref(challenge.request_id)


class _UpstreamUnavailable(Exception):
    pass


@register_otp_provider("http")
class HttpOtpProvider(OtpProvider):
    """
    Generic OTP gateway over HTTPS.

    POST {base}/otp/request  {"id_number"}            -> {"request_id", "reference"}
    POST {base}/otp/verify   {"request_id", "otp"}    -> {"reference"}

    The gateway keeps the code; the local store only tracks which request ids
    are still open so a confirmed id can never be confirmed twice here.
    """

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        store: ChallengeStore,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **options,
    ):
        super().__init__(store, **options)
        self.base_url = (base_url or settings.OTP_PROVIDER_BASE_URL or "").rstrip("/")
        self.api_key = api_key or settings.OTP_PROVIDER_API_KEY
        if not self.base_url or not self.api_key:
            raise ValueError("OTP_PROVIDER_BASE_URL and OTP_PROVIDER_API_KEY must be configured")
        self.timeout = timeout or settings.OTP_PROVIDER_TIMEOUT
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        """POST with retries on transport errors and 5xx; anything else is returned."""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((httpx.TransportError, _UpstreamUnavailable)),
                stop=stop_after_attempt(self.MAX_ATTEMPTS),
                wait=wait_exponential(multiplier=0.2, max=2),
                reraise=True,
            ):
                with attempt:
                    async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                        response = await client.post(
                            f"{self.base_url}{path}", json=payload, headers=self._headers()
                        )
                    if response.status_code >= 500:
                        raise _UpstreamUnavailable(f"{response.status_code} from {path}")
                    return response
        except (httpx.TransportError, _UpstreamUnavailable) as e:
            logger.error(f"OTP provider call {path} failed after {self.MAX_ATTEMPTS} attempts: {e}")
            raise ProviderError("OTP provider unavailable") from e

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("OTP provider returned an unreadable response") from e

    async def _issue(self, id_number: str) -> ChallengeTicket:
        response = await self._post("/otp/request", {"id_number": id_number})
        if response.status_code in (400, 422):
            raise InvalidFormat("Aadhaar number rejected by provider")
        if response.status_code != 200:
            raise ProviderError(f"OTP provider returned {response.status_code}")

        data = self._json(response)
        request_id = data.get("request_id")
        if not request_id:
            raise ProviderError("OTP provider response missing request_id")

        await self.store.save(Challenge(request_id=request_id, code=None, expires_at=self._expiry()))
        return ChallengeTicket(
            request_id=request_id,
            provider_ref=data.get("reference") or f"{self.name}-{request_id}",
        )

    async def _check(self, challenge: Challenge, code: str) -> str:
        response = await self._post(
            "/otp/verify", {"request_id": challenge.request_id, "otp": code}
        )
        if response.status_code == 404:
            raise InvalidRequest("Invalid or expired requestId")
        if response.status_code == 410:
            raise ExpiredChallenge("OTP expired")
        if response.status_code in (400, 422):
            raise InvalidCode("Invalid OTP")
        if response.status_code != 200:
            raise ProviderError(f"OTP provider returned {response.status_code}")

        data = self._json(response)
        return data.get("reference") or f"{self.name}-{challenge.request_id}"


# ── Factory ───────────────────────────────────────────────────

def build_otp_provider(name: Optional[str], store: ChallengeStore, **options) -> OtpProvider:
    key = (name or "").strip().lower()
    provider_cls = OTP_PROVIDERS.get(key)
    if provider_cls is None:
        logger.warning(f"Unknown OTP provider '{name}', falling back to mock")
        PROVIDER_FALLBACKS.inc()
        return MockOtpProvider(store)

    try:
        provider = provider_cls(store, **options)
    except Exception as e:
        logger.warning(f"Failed to load OTP provider '{key}', falling back to mock: {e}")
        PROVIDER_FALLBACKS.inc()
        return MockOtpProvider(store)

    logger.info(f"OTP provider '{provider.name}' ready")
    return provider


# ── Application instance (initialized on startup) ────────────

otp_provider: Optional[OtpProvider] = None


def init_otp_provider() -> OtpProvider:
    global otp_provider
    if settings.OTP_CHALLENGE_BACKEND == "redis":
        from config.redis_client import get_redis
        store: ChallengeStore = RedisChallengeStore(get_redis())
    else:
        store = InMemoryChallengeStore()
    otp_provider = build_otp_provider(settings.OTP_PROVIDER, store)
    return otp_provider


def get_otp_provider() -> OtpProvider:
    """FastAPI dependency to get the configured provider."""
    if not otp_provider:
        raise RuntimeError("OTP provider not initialized. Call init_otp_provider() first.")
    return otp_provider
