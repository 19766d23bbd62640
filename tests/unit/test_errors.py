"""Tests for error classification."""

import asyncio

import httpx
import pytest

from contentflow.errors import (
    ClaimHeldError,
    ErrorKind,
    PermanentFailure,
    RateLimitError,
    TransientError,
    ValidationError,
    classify_error,
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://social.test/post")
    return httpx.HTTPStatusError(
        "error", request=request, response=httpx.Response(status_code, request=request)
    )


class TestClassifyError:
    @pytest.mark.parametrize(
        "exc,kind",
        [
            (ValidationError("bad"), ErrorKind.VALIDATION),
            (TransientError("flaky"), ErrorKind.TRANSIENT),
            (PermanentFailure("gone"), ErrorKind.PERMANENT),
            (RateLimitError("slow down", 1000), ErrorKind.RATE_LIMITED),
            (ClaimHeldError("busy", 5000), ErrorKind.RATE_LIMITED),
        ],
    )
    def test_tagged_errors_keep_their_kind(self, exc, kind) -> None:
        assert classify_error(exc) is kind

    @pytest.mark.parametrize("status_code,kind", [
        (429, ErrorKind.RATE_LIMITED),
        (404, ErrorKind.VALIDATION),
        (502, ErrorKind.TRANSIENT),
    ])
    def test_http_status_errors(self, status_code, kind) -> None:
        assert classify_error(_status_error(status_code)) is kind

    def test_network_and_unknown_errors_are_transient(self) -> None:
        request = httpx.Request("GET", "http://social.test/")
        assert classify_error(httpx.ConnectError("refused", request=request)) is ErrorKind.TRANSIENT
        assert classify_error(asyncio.TimeoutError()) is ErrorKind.TRANSIENT
        assert classify_error(ConnectionResetError()) is ErrorKind.TRANSIENT
        assert classify_error(KeyError("surprise")) is ErrorKind.TRANSIENT

    def test_claim_held_carries_its_wait(self) -> None:
        assert ClaimHeldError("busy", 5000).retry_after_ms == 5000
