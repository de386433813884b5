"""Test rate-limit retries and document polling."""
import asyncio

import pytest

from generation.poller import DocumentPoller
from generation.retry_handler import RetryHandler
from utils.errors import RateLimitedError, UpstreamGenerationError


def test_error_default_message_and_payload():
    """Errors without a message use their class description."""
    error = RateLimitedError()
    assert error.message == "API rate limit exceeded. Please try again later."
    assert error.to_dict() == {
        "error": "API rate limit exceeded. Please try again later.",
        "code": "RATE_LIMITED",
        "status": 429,
    }
    assert UpstreamGenerationError("boom").to_dict()["error"] == "boom"


def test_retry_recovers_after_rate_limit():
    """A call that is rate limited once then succeeds returns its value."""
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 2:
            raise RateLimitedError()
        return "ok"

    handler = RetryHandler(max_retries=3, base_delay=0)
    assert asyncio.run(handler.execute_with_retry(flaky)) == "ok"
    assert len(attempts) == 2


def test_retry_ignores_other_errors():
    """Non rate-limit failures are not retried."""
    attempts = []

    async def broken():
        attempts.append(1)
        raise UpstreamGenerationError("bad request")

    handler = RetryHandler(max_retries=3, base_delay=0)
    with pytest.raises(UpstreamGenerationError):
        asyncio.run(handler.execute_with_retry(broken))
    assert len(attempts) == 1


def test_poller_ready(backend):
    """Polling stops once the document is active."""
    backend.document_states = ["PROCESSING", "ACTIVE"]
    result = asyncio.run(DocumentPoller(backend, poll_interval_seconds=0).poll_until_ready("files/x"))
    assert result.status == "ready"
    assert result.document.state == "ACTIVE"


def test_poller_failed(backend):
    """A FAILED state ends polling with an error."""
    backend.document_states = ["FAILED"]
    result = asyncio.run(DocumentPoller(backend, poll_interval_seconds=0).poll_until_ready("files/x"))
    assert result.status == "failed"
    assert "files/x" in result.error


def test_poller_timeout_and_transient_errors(backend):
    """Status errors are tolerated until the deadline."""
    backend.fail_with["get_document"] = RuntimeError("flaky status")
    poller = DocumentPoller(backend, max_wait_seconds=0.05, poll_interval_seconds=0.01)
    result = asyncio.run(poller.poll_until_ready("files/x"))
    assert result.status == "timeout"
    assert result.document is None
    assert len(backend.calls["get_document"]) >= 2
