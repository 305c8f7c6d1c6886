"""Tests for the error taxonomy and response envelope."""

from sessionguard.service.errors import (
    AuthenticationFailedError,
    ConflictError,
    RateLimitedError,
    RevocationStoreError,
    SessionNotFoundError,
    TokenRevokedError,
)


def test_token_errors_hide_reason_from_callers():
    envelope = TokenRevokedError().to_envelope()

    assert envelope["status"] == "error"
    assert envelope["error"]["code"] == "unauthorized"
    assert envelope["error"]["message"] == "Invalid or expired session"
    assert SessionNotFoundError().reason == "session_not_found"


def test_status_codes_follow_class():
    assert AuthenticationFailedError().status_code == 401
    assert ConflictError("dup").status_code == 409
    assert RevocationStoreError("down").status_code == 500
    assert RevocationStoreError("down").error_code == "server_error"


def test_rate_limit_carries_retry_after():
    exc = RateLimitedError(retry_after=900)

    assert exc.status_code == 429
    assert exc.to_envelope()["error"]["details"] == {"retry_after": 900}
