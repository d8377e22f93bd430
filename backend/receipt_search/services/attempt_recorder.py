# ============================================================================
# backend/receipt_search/services/attempt_recorder.py
# ============================================================================
"""
Attempt Recorder - per-attempt tracking of embedding generation.

The embedding worker reports every embedding-generation attempt here: one
row is created when the attempt starts (status=pending) and mutated once
when it finishes. Attempt-level failures are stored as structured data
(``error_type`` / ``error_message``) instead of being raised, so retry logic
upstream can branch on the error category without parsing free text.

Concurrency:
    Each attempt is its own row, so concurrent ``record_attempt`` calls never
    contend. ``complete_attempt`` is last-write-wins by default; callers that
    can race on the same attempt pass ``expected_version`` to turn the write
    into a compare-and-set.

Usage:
    from receipt_search.services.attempt_recorder import attempt_recorder

    attempt_id = await attempt_recorder.record_attempt(
        session, receipt_id=receipt.id, user_id=user_id, team_id=team_id,
        upload_context="batch", model="gemini-embedding-exp-03-07",
        start_time=started, content_types=["merchant", "full_text"],
    )
    try:
        ...
        await attempt_recorder.complete_attempt(session, attempt_id, datetime.utcnow(), "success",
                                                api_calls=2, api_tokens=812)
    except httpx.HTTPError as exc:
        await attempt_recorder.fail_attempt(session, attempt_id, exc, datetime.utcnow())

Author: Receipt Search Development Team
Version: 1.0.0
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import List, Optional, Union

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import AttemptStatus, EmbeddingAttempt, ErrorType, UploadContext

logger = logging.getLogger("receipt_search.attempt_recorder")


class AttemptNotFoundError(LookupError):
    """Raised when completing an attempt id that does not exist."""


class StaleAttemptError(RuntimeError):
    """Raised when an attempt changed since the caller's expected version."""

    def __init__(self, attempt_id, expected_version: int):
        self.attempt_id = attempt_id
        self.expected_version = expected_version
        super().__init__(
            f"Embedding attempt {attempt_id} is no longer at version {expected_version}"
        )


# =============================================================================
# Error classification
# =============================================================================

_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "429", "too many requests", "quota")
_NETWORK_MARKERS = ("network", "connection", "fetch", "dns", "unreachable")
_VALIDATION_MARKERS = ("validation", "invalid", "400")
_TIMEOUT_MARKERS = ("timeout", "timed out")


def classify_error(exc: BaseException) -> ErrorType:
    """
    Map a worker exception onto the attempt error taxonomy.

    Typed exceptions are checked first (httpx status/transport/timeout
    errors, builtin timeout/connection/value errors); anything else falls
    back to message heuristics and finally ``unknown``.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        if status_code == 429:
            return ErrorType.API_LIMIT
        if status_code in (400, 422):
            return ErrorType.VALIDATION
        if status_code in (408, 504):
            return ErrorType.TIMEOUT
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ErrorType.NETWORK

    message = str(exc).lower()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return ErrorType.API_LIMIT
    if any(marker in message for marker in _TIMEOUT_MARKERS):
        return ErrorType.TIMEOUT
    if any(marker in message for marker in _NETWORK_MARKERS):
        return ErrorType.NETWORK
    if isinstance(exc, ValueError) or any(marker in message for marker in _VALIDATION_MARKERS):
        return ErrorType.VALIDATION
    return ErrorType.UNKNOWN


# =============================================================================
# Attempt Recorder
# =============================================================================

class AttemptRecorder:
    """
    Records embedding-generation attempts and their outcomes.

    Methods never commit; the caller's session scope owns the transaction.
    """

    async def record_attempt(
        self,
        session: AsyncSession,
        receipt_id: Optional[uuid.UUID],
        user_id: Optional[uuid.UUID],
        team_id: Optional[uuid.UUID] = None,
        upload_context: Union[str, UploadContext] = UploadContext.SINGLE,
        model: Optional[str] = None,
        start_time: Optional[datetime] = None,
        content_types: Optional[List[str]] = None,
        content_length: int = 0,
        synthetic_content_used: bool = False,
        embedding_dimensions: Optional[int] = None,
        retry_count: int = 0,
    ) -> uuid.UUID:
        """
        Create a pending attempt and return its id.

        Only the identity fields are validated: ``receipt_id`` and
        ``user_id`` must be present and ``upload_context`` must be one of
        single/batch.

        Raises:
            ValueError: If an identity field is missing or the upload
                context is unknown
        """
        if receipt_id is None:
            raise ValueError("receipt_id is required to record an embedding attempt")
        if user_id is None:
            raise ValueError("user_id is required to record an embedding attempt")
        context = UploadContext(upload_context)

        processed = list(content_types or [])
        attempt = EmbeddingAttempt(
            id=uuid.uuid4(),
            receipt_id=receipt_id,
            user_id=user_id,
            team_id=team_id,
            upload_context=context.value,
            model=model,
            start_time=start_time or datetime.utcnow(),
            status=AttemptStatus.PENDING.value,
            retry_count=retry_count,
            content_types_processed=processed,
            total_content_types=len(processed),
            successful_content_types=0,
            failed_content_types=0,
            api_calls_made=0,
            api_tokens_used=0,
            rate_limited=False,
            embedding_dimensions=embedding_dimensions,
            content_length=content_length,
            synthetic_content_used=synthetic_content_used,
            version=1,
        )
        session.add(attempt)
        await session.flush()

        logger.debug(
            f"Recorded embedding attempt {attempt.id} for receipt {receipt_id} "
            f"({context.value}, {len(processed)} content types)"
        )
        return attempt.id

    async def get_attempt(self, session: AsyncSession, attempt_id: uuid.UUID) -> Optional[EmbeddingAttempt]:
        return await session.get(EmbeddingAttempt, attempt_id)

    async def complete_attempt(
        self,
        session: AsyncSession,
        attempt_id: uuid.UUID,
        end_time: datetime,
        status: Union[str, AttemptStatus],
        error_type: Optional[Union[str, ErrorType]] = None,
        error_message: Optional[str] = None,
        api_calls: Optional[int] = None,
        api_tokens: Optional[int] = None,
        rate_limited: Optional[bool] = None,
        expected_version: Optional[int] = None,
    ) -> EmbeddingAttempt:
        """
        Record the outcome of an attempt.

        ``duration_ms`` is computed from the stored start time. Status, end
        time, error type and error message are overwritten; API counters and
        the rate-limit flag keep their stored values when passed as None.
        Content-type counters follow the outcome: success marks every
        processed type successful, failed/timeout marks them all failed.

        Args:
            expected_version: When given, the write only applies if the
                attempt is still at this version

        Returns:
            The updated EmbeddingAttempt

        Raises:
            AttemptNotFoundError: Unknown attempt id
            StaleAttemptError: expected_version no longer matches
            ValueError: Unknown status or error type
        """
        new_status = AttemptStatus(status)
        new_error_type = ErrorType(error_type).value if error_type is not None else None

        attempt = await session.get(EmbeddingAttempt, attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(f"Embedding attempt not found: {attempt_id}")

        duration_ms = int((end_time - attempt.start_time).total_seconds() * 1000)
        total = attempt.total_content_types or 0
        if new_status == AttemptStatus.SUCCESS:
            successful, failed = total, 0
        elif new_status in (AttemptStatus.FAILED, AttemptStatus.TIMEOUT):
            successful, failed = 0, total
        else:
            successful, failed = attempt.successful_content_types, attempt.failed_content_types

        values = {
            "end_time": end_time,
            "duration_ms": duration_ms,
            "status": new_status.value,
            "error_type": new_error_type,
            "error_message": error_message,
            "successful_content_types": successful,
            "failed_content_types": failed,
            "api_calls_made": api_calls if api_calls is not None else attempt.api_calls_made,
            "api_tokens_used": api_tokens if api_tokens is not None else attempt.api_tokens_used,
            "rate_limited": rate_limited if rate_limited is not None else attempt.rate_limited,
            "version": EmbeddingAttempt.version + 1,
            "updated_at": datetime.utcnow(),
        }

        stmt = update(EmbeddingAttempt).where(EmbeddingAttempt.id == attempt_id)
        if expected_version is not None:
            stmt = stmt.where(EmbeddingAttempt.version == expected_version)
        result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))

        if result.rowcount == 0:
            if expected_version is None:
                raise AttemptNotFoundError(f"Embedding attempt not found: {attempt_id}")
            raise StaleAttemptError(attempt_id, expected_version)

        await session.refresh(attempt)
        logger.debug(
            f"Completed embedding attempt {attempt_id}: {new_status.value} in {duration_ms}ms"
        )
        return attempt

    async def fail_attempt(
        self,
        session: AsyncSession,
        attempt_id: uuid.UUID,
        exc: BaseException,
        end_time: datetime,
        api_calls: Optional[int] = None,
        api_tokens: Optional[int] = None,
        expected_version: Optional[int] = None,
    ) -> EmbeddingAttempt:
        """
        Classify a worker exception and complete the attempt with it.

        Timeouts complete with status ``timeout``; every other error with
        ``failed``. Rate-limit errors also set the ``rate_limited`` flag.
        """
        error_type = classify_error(exc)
        status = AttemptStatus.TIMEOUT if error_type == ErrorType.TIMEOUT else AttemptStatus.FAILED
        logger.warning(
            f"Embedding attempt {attempt_id} failed ({error_type.value}): {exc}"
        )
        return await self.complete_attempt(
            session,
            attempt_id,
            end_time=end_time,
            status=status,
            error_type=error_type,
            error_message=str(exc)[:2000],
            api_calls=api_calls,
            api_tokens=api_tokens,
            rate_limited=True if error_type == ErrorType.API_LIMIT else None,
            expected_version=expected_version,
        )


# Global attempt recorder instance
attempt_recorder = AttemptRecorder()
