"""
services/otp/store.py
Challenge repositories for OTP providers.

A store is injected into a provider instance, so each provider owns its
challenges and production can swap the in-memory store for Redis without
touching the provider contract. consume() is the single point that enforces
at-most-one successful verification per request id.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

import redis.asyncio as aioredis

from shared.utils.clock import ensure_utc, utcnow


@dataclass(frozen=True)
class Challenge:
    request_id: str
    code: Optional[str]          # None when the code lives with a remote provider
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return utcnow() > ensure_utc(self.expires_at)


class ChallengeStore(ABC):
    @abstractmethod
    async def save(self, challenge: Challenge) -> None: ...

    @abstractmethod
    async def get(self, request_id: str) -> Optional[Challenge]: ...

    @abstractmethod
    async def consume(self, request_id: str) -> bool:
        """Remove the challenge. True only for the caller that actually removed it."""


class InMemoryChallengeStore(ChallengeStore):
    """Process-local store. Fine for a single worker and for tests."""

    def __init__(self):
        self._challenges: Dict[str, Challenge] = {}

    async def save(self, challenge: Challenge) -> None:
        self._purge_expired()
        self._challenges[challenge.request_id] = challenge

    async def get(self, request_id: str) -> Optional[Challenge]:
        return self._challenges.get(request_id)

    async def consume(self, request_id: str) -> bool:
        # dict.pop does not yield to the event loop, so only one coroutine can win
        return self._challenges.pop(request_id, None) is not None

    def _purge_expired(self) -> None:
        stale = [rid for rid, ch in self._challenges.items() if ch.is_expired]
        for rid in stale:
            self._challenges.pop(rid, None)

    def __len__(self) -> int:
        return len(self._challenges)


class RedisChallengeStore(ChallengeStore):
    """Shared store for multi-instance deployments. Keys expire with the challenge."""

    KEY_PREFIX = "otp_challenge:"

    def __init__(self, client: aioredis.Redis):
        self.client = client

    def _key(self, request_id: str) -> str:
        return f"{self.KEY_PREFIX}{request_id}"

    async def save(self, challenge: Challenge) -> None:
        ttl = max(1, int((ensure_utc(challenge.expires_at) - utcnow()).total_seconds()) + 1)
        payload = {
            "request_id": challenge.request_id,
            "code": challenge.code,
            "expires_at": ensure_utc(challenge.expires_at).isoformat(),
        }
        await self.client.setex(self._key(challenge.request_id), ttl, json.dumps(payload))

    async def get(self, request_id: str) -> Optional[Challenge]:
        raw = await self.client.get(self._key(request_id))
        if not raw:
            return None
        data = json.loads(raw)
        return Challenge(
            request_id=data["request_id"],
            code=data.get("code"),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )

    async def consume(self, request_id: str) -> bool:
        # DEL is atomic: exactly one concurrent caller sees 1
        return await self.client.delete(self._key(request_id)) == 1
