"""
Test assertions for Result values.

Expressive assert helpers that print the reason code and message of an
unexpected Failure instead of a bare `assert False`:

    identity = ResultAssertions.assert_success(store.rotate(material))
    ResultAssertions.assert_failure(trust_store.reload(bad), ErrorCode.INVALID_TRUST_ANCHOR)
"""

from __future__ import annotations

from typing import TypeVar

from peertrust.failure import ErrorCode, FailureDescription
from peertrust.result import Result

T = TypeVar("T")


class ResultAssertions:
    """Assertions over Result values for the test suite."""

    @staticmethod
    def assert_success(result: Result[T], message: str = "") -> T:
        """Assert the Result is a Success and return the value."""
        context = f" ({message})" if message else ""
        assert result.is_success(), f"Expected Success but got {result.error()}{context}"
        return result.value()

    @staticmethod
    def assert_failure(
        result: Result[T],
        expected_code: ErrorCode | None = None,
        message: str = "",
    ) -> FailureDescription:
        """Assert the Result is a Failure, optionally with a specific reason code."""
        context = f" ({message})" if message else ""
        assert result.is_failure(), f"Expected Failure but got Success({result.value()!r}){context}"
        error = result.error()
        if expected_code is not None:
            assert error.code is expected_code, (
                f"Expected reason {expected_code.value} but got {error}{context}"
            )
        return error

    @staticmethod
    def assert_failure_message_contains(result: Result[T], substring: str) -> None:
        error = ResultAssertions.assert_failure(result)
        assert substring.lower() in error.message.lower(), (
            f"Expected failure message to contain {substring!r} but message was: {error.message!r}"
        )
