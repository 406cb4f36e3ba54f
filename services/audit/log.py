"""
services/audit/log.py
Append-only verification audit trail.

Entries are written after the transition they describe has committed, in a
session and commit of their own. A failed write is logged and counted; it
never undoes or blocks the primary transition.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Request
from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import sibling_session
from shared.models.models import AuditAction, VerificationAudit

logger = logging.getLogger(__name__)

AUDIT_WRITE_FAILURES = Counter(
    "verification_audit_write_failures_total",
    "Audit entries that could not be persisted",
    ["action"],
)


@dataclass(frozen=True)
class RequestContext:
    """Client metadata captured for the audit trail."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: Optional[Request]) -> "RequestContext":
        if request is None:
            return cls()
        return cls(
            ip_address=request.client.host if request.client else None,
            user_agent=(request.headers.get("user-agent") or "")[:256] or None,
        )


class AuditLog:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        subject_id: UUID,
        action: AuditAction,
        ctx: Optional[RequestContext] = None,
        admin_id: Optional[UUID] = None,
        reason: Optional[str] = None,
        document_id: Optional[UUID] = None,
        provider_ref: Optional[str] = None,
        token_hash: Optional[str] = None,
    ) -> Optional[VerificationAudit]:
        ctx = ctx or RequestContext()
        entry = VerificationAudit(
            subject_id=subject_id,
            admin_id=admin_id,
            action=action.value,
            reason=reason,
            document_id=document_id,
            provider_ref=provider_ref,
            token_hash=token_hash,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        try:
            async with sibling_session(self.db) as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError:
            AUDIT_WRITE_FAILURES.labels(action=action.value).inc()
            logger.exception("Audit write failed: action=%s subject=%s", action.value, subject_id)
            return None
        return entry
