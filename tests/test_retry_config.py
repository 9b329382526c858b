"""
Tests for the transient-failure retry policy.
"""

import pytest
from unittest.mock import AsyncMock

from railway_orchestrator.exceptions import (
    CliExecutionError,
    CliTimeoutError,
    CommandValidationError,
    TransientCliError,
)
from railway_orchestrator.services.retry_config import (
    create_retrying,
    is_retryable_error,
    is_transient_stderr,
)


@pytest.mark.unit
class TestClassification:

    @pytest.mark.parametrize("exc", [
        CliTimeoutError("up", 600000, 600010),
        TransientCliError("up", 1, "Error: socket hang up"),
        ConnectionError("reset"),
        TimeoutError(),
    ])
    def test_transient_errors_are_retryable(self, exc):
        assert is_retryable_error(exc) is True

    @pytest.mark.parametrize("exc", [
        CommandValidationError("ssh denied"),
        CliExecutionError("railway not found"),
        ValueError("bad"),
        RuntimeError("unexpected"),
    ])
    def test_permanent_errors_are_not_retryable(self, exc):
        assert is_retryable_error(exc) is False

    @pytest.mark.parametrize("stderr", [
        "Error: connect ECONNREFUSED 127.0.0.1:443",
        "read ECONNRESET",
        "request to backboard.railway.app failed, reason: socket hang up",
        "Gateway returned 503 Service Unavailable",
        "502 Bad Gateway",
        "Temporary failure in name resolution",
        "Too Many Requests",
        "network error while uploading",
    ])
    def test_network_stderr_is_transient(self, stderr):
        assert is_transient_stderr(stderr) is True

    @pytest.mark.parametrize("stderr", [
        "",
        "npm ERR! code ELIFECYCLE",
        "error TS2322: Type 'string' is not assignable to type 'number'",
        "Dockerfile parse error line 3",
    ])
    def test_build_errors_are_not_transient(self, stderr):
        assert is_transient_stderr(stderr) is False


@pytest.mark.unit
class TestCreateRetrying:

    @pytest.mark.asyncio
    async def test_retries_transient_until_success(self):
        operation = AsyncMock(side_effect=[
            CliTimeoutError("up", 1000, 1000),
            TransientCliError("up", 1, "ECONNRESET"),
            "ok",
        ])

        async for attempt in create_retrying(max_attempts=3, min_wait=0):
            with attempt:
                result = await operation()

        assert result == "ok"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_reraises_after_attempt_ceiling(self):
        operation = AsyncMock(side_effect=CliTimeoutError("up", 1000, 1000))

        with pytest.raises(CliTimeoutError):
            async for attempt in create_retrying(max_attempts=3, min_wait=0):
                with attempt:
                    await operation()

        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        operation = AsyncMock(side_effect=CommandValidationError("denied"))

        with pytest.raises(CommandValidationError):
            async for attempt in create_retrying(max_attempts=3, min_wait=0):
                with attempt:
                    await operation()

        assert operation.await_count == 1
