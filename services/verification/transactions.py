"""
services/verification/transactions.py
Per-subject unit of work with optimistic-lock retry.
"""

import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from config.settings import settings
from shared.errors import StateConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def in_subject_transaction(db: AsyncSession, unit: Callable[[], Awaitable[T]]) -> T:
    """
    Run `unit` and commit. If another writer bumped the subject's version in
    the meantime, roll back and run the whole unit again from a fresh read.
    VerificationErrors raised by the unit are never retried.
    """
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(StaleDataError),
            stop=stop_after_attempt(settings.SUBJECT_WRITE_MAX_RETRIES),
            wait=wait_random_exponential(multiplier=0.05, max=0.5),
            reraise=True,
        ):
            with attempt:
                try:
                    result = await unit()
                    await db.commit()
                except StaleDataError:
                    await db.rollback()
                    logger.info(
                        "Concurrent subject update, retrying (attempt %s)",
                        attempt.retry_state.attempt_number,
                    )
                    raise
                except Exception:
                    await db.rollback()
                    raise
    except StaleDataError as e:
        raise StateConflictError(
            "Subject was modified concurrently, please retry", code="concurrent_update"
        ) from e
    return result
