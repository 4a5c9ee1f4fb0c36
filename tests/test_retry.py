import subprocess
import unittest
from types import SimpleNamespace
from unittest.mock import Mock

import httpx

from skillhub.client import SkillhubHTTPError
from skillhub.retry import RetryError, is_transient_error, retry_call


class _CodedError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class TestRetryCall(unittest.TestCase):
    def test_retries_transient_failures_then_succeeds(self) -> None:
        calls = {"n": 0}
        sleeps: list[float] = []

        def flaky() -> str:
            calls["n"] += 1
            if calls["n"] < 3:
                raise _CodedError("temporary network issue", "ECONNRESET")
            return "ok"

        result = retry_call(flaky, initial_delay_s=0.01, factor=2.0, sleep=sleeps.append)

        self.assertEqual(result, "ok")
        self.assertEqual(calls["n"], 3)
        self.assertEqual(sleeps, [0.01, 0.02])

    def test_fails_after_max_attempts(self) -> None:
        def always_timeout() -> None:
            raise _CodedError("timeout", "ETIMEDOUT")

        with self.assertRaises(RetryError) as ctx:
            retry_call(always_timeout, max_attempts=2, label="sample-op", sleep=lambda _s: None)

        self.assertIn("sample-op failed after 2 attempt(s)", str(ctx.exception))
        self.assertEqual(ctx.exception.attempts, 2)
        self.assertIsInstance(ctx.exception.__cause__, _CodedError)

    def test_does_not_retry_non_transient(self) -> None:
        fn = Mock(side_effect=ValueError("validation failed"))
        with self.assertRaises(RetryError) as ctx:
            retry_call(fn, max_attempts=3, sleep=lambda _s: None)
        self.assertIn("Operation failed after 1 attempt(s)", str(ctx.exception))
        fn.assert_called_once()


class TestIsTransientError(unittest.TestCase):
    def test_http_statuses(self) -> None:
        self.assertTrue(is_transient_error(SkillhubHTTPError(503, "")))
        self.assertTrue(is_transient_error(SkillhubHTTPError(429, "")))
        self.assertFalse(is_transient_error(SkillhubHTTPError(404, "timeout in body")))

    def test_codes_and_messages(self) -> None:
        self.assertTrue(is_transient_error(_CodedError("boom", "ECONNRESET")))
        self.assertTrue(is_transient_error(RuntimeError("Request timed out")))
        self.assertTrue(is_transient_error(ConnectionResetError(104, "reset")))
        self.assertFalse(is_transient_error(RuntimeError("Bad request")))

    def test_library_errors(self) -> None:
        self.assertTrue(is_transient_error(httpx.ConnectTimeout("slow")))
        self.assertTrue(is_transient_error(subprocess.TimeoutExpired(cmd="npx", timeout=1)))

    def test_status_attribute(self) -> None:
        err = Exception("x")
        err.status = 502  # type: ignore[attr-defined]
        self.assertTrue(is_transient_error(err))
        self.assertFalse(is_transient_error(Exception(SimpleNamespace())))


if __name__ == "__main__":
    unittest.main()
