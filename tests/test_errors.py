"""Error taxonomy and user-facing messages."""

import sqlite3

import httpx
import pytest
from pydantic import BaseModel, ValidationError

from viking_sync.errors import (
    AuthExpiredError,
    BlockedError,
    ErrorKind,
    NetworkError,
    RateLimitedError,
    RecordValidationError,
    StorageError,
    SyncError,
    UnknownError,
    classify,
    is_offline_error,
    is_token_expired_message,
    user_message,
)


class _Model(BaseModel):
    count: int


class TestUserMessage:
    def test_context_prefix(self):
        message = user_message(NetworkError("boom"), "load events")

        assert message.startswith("Unable to load events. ")
        assert "internet connection" in message

    def test_rate_limit_is_silent(self):
        assert user_message(RateLimitedError("slow down")) is None

    @pytest.mark.parametrize(
        "error, fragment",
        [
            (AuthExpiredError(), "session has expired"),
            (BlockedError(), "blocked"),
            (StorageError(), "Local cache"),
            (SyncError(), "most recent saved copy"),
            (UnknownError(), "unexpected error"),
        ],
    )
    def test_kinds(self, error, fragment):
        assert fragment in user_message(error)

    def test_property_uses_context(self):
        error = NetworkError("timeout", context="sync")

        assert error.user_message.startswith("Unable to sync.")

    def test_operator_detail_not_shown(self):
        error = StorageError("disk I/O error at page 42")

        assert "page 42" not in user_message(error)
        assert error.to_dict()["detail"] == "disk I/O error at page 42"


class TestClassify:
    def test_viking_errors_pass_through(self):
        error = BlockedError("nope")

        assert classify(error) is error

    def test_timeout(self):
        assert isinstance(classify(httpx.ReadTimeout("slow")), NetworkError)

    def test_transport_error(self):
        classified = classify(httpx.ConnectError("refused"), context="probe")

        assert classified.kind is ErrorKind.NETWORK
        assert classified.context == "probe"
        assert classified.is_retryable

    def test_sqlite_error(self):
        assert isinstance(classify(sqlite3.OperationalError("locked")), StorageError)

    def test_pydantic_error(self):
        with pytest.raises(ValidationError) as exc_info:
            _Model(count="many")

        classified = classify(exc_info.value)

        assert isinstance(classified, RecordValidationError)
        assert classified.issues[0]["loc"] == ("count",)

    def test_offline_text_heuristic(self):
        assert isinstance(classify(RuntimeError("Failed to fetch")), NetworkError)

    def test_unknown(self):
        classified = classify(KeyError("x"))

        assert isinstance(classified, UnknownError)
        assert isinstance(classified.cause, KeyError)


class TestHeuristics:
    def test_offline_error(self):
        assert is_offline_error(TimeoutError())
        assert is_offline_error(ValueError("connection reset"))
        assert not is_offline_error(ValueError("bad value"))

    @pytest.mark.parametrize("text", ["Token expired", "Invalid token supplied", "401 Unauthorized"])
    def test_token_expired_message(self, text):
        assert is_token_expired_message(text)

    def test_token_expired_message_negative(self):
        assert not is_token_expired_message(None)
        assert not is_token_expired_message("Server error")
