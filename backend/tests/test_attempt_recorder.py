"""
Tests for AttemptRecorder.

Verifies attempt creation, completion (duration, counters, version bump),
compare-and-set completion and the error taxonomy used by fail_attempt.
"""

import asyncio
import uuid
from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio

from receipt_search.database.models import AttemptStatus, ErrorType
from receipt_search.services.attempt_recorder import (
    AttemptNotFoundError,
    AttemptRecorder,
    StaleAttemptError,
    classify_error,
)

START = datetime(2026, 3, 1, 14, 5, 0)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://embeddings.example.com/v1/embed")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


# =============================================================================
# Error classification
# =============================================================================


class TestClassifyError:
    """Worker exceptions map onto api_limit/network/validation/timeout/unknown."""

    def test_rate_limited_status(self):
        assert classify_error(_status_error(429)) == ErrorType.API_LIMIT

    def test_bad_request_status(self):
        assert classify_error(_status_error(400)) == ErrorType.VALIDATION

    def test_gateway_timeout_status(self):
        assert classify_error(_status_error(504)) == ErrorType.TIMEOUT

    def test_httpx_timeout(self):
        assert classify_error(httpx.ReadTimeout("read timed out")) == ErrorType.TIMEOUT

    def test_asyncio_timeout(self):
        assert classify_error(asyncio.TimeoutError()) == ErrorType.TIMEOUT

    def test_transport_error(self):
        assert classify_error(httpx.ConnectError("refused")) == ErrorType.NETWORK

    def test_connection_error(self):
        assert classify_error(ConnectionResetError("reset by peer")) == ErrorType.NETWORK

    def test_message_heuristics(self):
        assert classify_error(RuntimeError("Quota exceeded for model")) == ErrorType.API_LIMIT
        assert classify_error(RuntimeError("invalid input text")) == ErrorType.VALIDATION

    def test_value_error_is_validation(self):
        assert classify_error(ValueError("empty content")) == ErrorType.VALIDATION

    def test_unknown(self):
        assert classify_error(RuntimeError("boom")) == ErrorType.UNKNOWN


# =============================================================================
# Recording and completion
# =============================================================================


class TestRecordAttempt:

    @pytest.fixture
    def recorder(self):
        return AttemptRecorder()

    @pytest.mark.asyncio
    async def test_creates_pending_attempt(self, recorder, session, user_id, team_id):
        """New attempts start pending at version 1 with zeroed counters."""
        attempt_id = await recorder.record_attempt(
            session,
            receipt_id=uuid.uuid4(),
            user_id=user_id,
            team_id=team_id,
            upload_context="batch",
            model="embed-model",
            start_time=START,
            content_types=["merchant", "full_text"],
            content_length=120,
        )

        attempt = await recorder.get_attempt(session, attempt_id)
        assert attempt.status == AttemptStatus.PENDING.value
        assert attempt.upload_context == "batch"
        assert attempt.total_content_types == 2
        assert attempt.content_types_processed == ["merchant", "full_text"]
        assert attempt.api_calls_made == 0
        assert attempt.version == 1

    @pytest.mark.asyncio
    async def test_requires_identity(self, recorder, session, user_id):
        with pytest.raises(ValueError, match="receipt_id"):
            await recorder.record_attempt(session, receipt_id=None, user_id=user_id)
        with pytest.raises(ValueError, match="user_id"):
            await recorder.record_attempt(session, receipt_id=uuid.uuid4(), user_id=None)

    @pytest.mark.asyncio
    async def test_rejects_unknown_upload_context(self, recorder, session, user_id):
        with pytest.raises(ValueError):
            await recorder.record_attempt(
                session, receipt_id=uuid.uuid4(), user_id=user_id, upload_context="bulk"
            )


class TestCompleteAttempt:

    @pytest.fixture
    def recorder(self):
        return AttemptRecorder()

    @pytest_asyncio.fixture
    async def attempt_id(self, recorder, session, user_id, team_id):
        return await recorder.record_attempt(
            session,
            receipt_id=uuid.uuid4(),
            user_id=user_id,
            team_id=team_id,
            start_time=START,
            content_types=["merchant", "full_text", "notes"],
        )

    @pytest.mark.asyncio
    async def test_success_sets_duration_and_counters(self, recorder, session, attempt_id):
        attempt = await recorder.complete_attempt(
            session,
            attempt_id,
            end_time=START + timedelta(milliseconds=1500),
            status="success",
            api_calls=3,
            api_tokens=900,
        )

        assert attempt.status == "success"
        assert attempt.duration_ms == 1500
        assert attempt.successful_content_types == 3
        assert attempt.failed_content_types == 0
        assert attempt.api_calls_made == 3
        assert attempt.api_tokens_used == 900
        assert attempt.version == 2

    @pytest.mark.asyncio
    async def test_missing_counters_keep_stored_values(self, recorder, session, attempt_id):
        await recorder.complete_attempt(
            session, attempt_id, START + timedelta(seconds=1), "processing", api_calls=1, api_tokens=10
        )
        attempt = await recorder.complete_attempt(
            session, attempt_id, START + timedelta(seconds=2), "failed", error_type="network"
        )

        assert attempt.api_calls_made == 1
        assert attempt.api_tokens_used == 10
        assert attempt.error_type == "network"
        assert attempt.failed_content_types == 3
        assert attempt.version == 3

    @pytest.mark.asyncio
    async def test_unknown_attempt(self, recorder, session):
        with pytest.raises(AttemptNotFoundError):
            await recorder.complete_attempt(session, uuid.uuid4(), START, "success")

    @pytest.mark.asyncio
    async def test_expected_version_guards_concurrent_completion(self, recorder, session, attempt_id):
        """The second writer holding a stale version is rejected."""
        await recorder.complete_attempt(
            session, attempt_id, START + timedelta(seconds=1), "success", expected_version=1
        )

        with pytest.raises(StaleAttemptError) as exc_info:
            await recorder.complete_attempt(
                session, attempt_id, START + timedelta(seconds=2), "failed", expected_version=1
            )

        assert exc_info.value.expected_version == 1
        attempt = await recorder.get_attempt(session, attempt_id)
        assert attempt.status == "success"
        assert attempt.version == 2

    @pytest.mark.asyncio
    async def test_without_version_last_write_wins(self, recorder, session, attempt_id):
        await recorder.complete_attempt(session, attempt_id, START + timedelta(seconds=1), "success")
        attempt = await recorder.complete_attempt(session, attempt_id, START + timedelta(seconds=2), "failed")
        assert attempt.status == "failed"


class TestFailAttempt:

    @pytest.fixture
    def recorder(self):
        return AttemptRecorder()

    @pytest_asyncio.fixture
    async def attempt_id(self, recorder, session, user_id):
        return await recorder.record_attempt(
            session, receipt_id=uuid.uuid4(), user_id=user_id, start_time=START, content_types=["merchant"]
        )

    @pytest.mark.asyncio
    async def test_rate_limit_sets_flag(self, recorder, session, attempt_id):
        attempt = await recorder.fail_attempt(
            session, attempt_id, _status_error(429), START + timedelta(seconds=1)
        )
        assert attempt.status == "failed"
        assert attempt.error_type == "api_limit"
        assert attempt.rate_limited is True
        assert "429" in attempt.error_message

    @pytest.mark.asyncio
    async def test_timeout_status(self, recorder, session, attempt_id):
        attempt = await recorder.fail_attempt(
            session, attempt_id, httpx.ReadTimeout("timed out"), START + timedelta(seconds=30)
        )
        assert attempt.status == "timeout"
        assert attempt.error_type == "timeout"
        assert attempt.rate_limited is False
