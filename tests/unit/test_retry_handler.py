"""Tests for retry handler."""

import subprocess
from unittest.mock import patch

import pytest

from azavset.retry_handler import retry_with_exponential_backoff, safe_error_message


class TestRetryWithExponentialBackoff:
    """Tests for retry_with_exponential_backoff decorator."""

    def test_succeeds_on_first_attempt(self):
        """Should return immediately on success."""
        call_count = 0

        @retry_with_exponential_backoff(max_attempts=3)
        def successful_operation():
            nonlocal call_count
            call_count += 1
            return "success"

        assert successful_operation() == "success"
        assert call_count == 1

    @patch("azavset.retry_handler.time.sleep")
    def test_retries_on_transient_error(self, mock_sleep):
        """Should retry until the operation succeeds."""
        call_count = 0

        @retry_with_exponential_backoff(max_attempts=3, initial_delay=1.0, jitter=False)
        def flaky_operation():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise subprocess.CalledProcessError(1, "az", stderr="ServiceUnavailable")
            return "success"

        assert flaky_operation() == "success"
        assert call_count == 3
        # Delay doubles between attempts
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch("azavset.retry_handler.time.sleep")
    def test_delay_capped_at_max_delay(self, mock_sleep):
        @retry_with_exponential_backoff(
            max_attempts=4, initial_delay=10.0, max_delay=15.0, jitter=False
        )
        def always_fails():
            raise subprocess.TimeoutExpired("az", 1)

        with pytest.raises(subprocess.TimeoutExpired):
            always_fails()

        assert [c.args[0] for c in mock_sleep.call_args_list] == [10.0, 15.0, 15.0]

    @patch("azavset.retry_handler.time.sleep")
    def test_jitter_stays_within_bounds(self, mock_sleep):
        @retry_with_exponential_backoff(max_attempts=2, initial_delay=4.0, jitter=True)
        def fails_once():
            if mock_sleep.call_count == 0:
                raise subprocess.TimeoutExpired("az", 1)
            return "ok"

        assert fails_once() == "ok"
        delay = mock_sleep.call_args[0][0]
        assert 3.0 <= delay <= 5.0

    @patch("azavset.retry_handler.time.sleep")
    def test_non_retryable_error_raised_immediately(self, mock_sleep):
        """Errors outside retryable_exceptions are not retried."""
        call_count = 0

        @retry_with_exponential_backoff(max_attempts=3)
        def broken():
            nonlocal call_count
            call_count += 1
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            broken()

        assert call_count == 1
        mock_sleep.assert_not_called()

    def test_single_attempt_does_not_sleep(self):
        with patch("azavset.retry_handler.time.sleep") as mock_sleep:

            @retry_with_exponential_backoff(max_attempts=1)
            def fails():
                raise subprocess.CalledProcessError(1, "az")

            with pytest.raises(subprocess.CalledProcessError):
                fails()

            mock_sleep.assert_not_called()

    def test_preserves_function_name(self):
        @retry_with_exponential_backoff()
        def export_template():
            return None

        assert export_template.__name__ == "export_template"


class TestSafeErrorMessage:
    """Tests for safe_error_message."""

    def test_uses_stderr_for_called_process_error(self):
        error = subprocess.CalledProcessError(
            1, ["az", "vm", "show"], stderr="(ResourceNotFound) VM not found\n"
        )
        assert safe_error_message(error) == "(ResourceNotFound) VM not found"

    def test_truncates_long_messages(self):
        message = safe_error_message(RuntimeError("x" * 500))
        assert len(message) == 203
        assert message.endswith("...")

    def test_masks_credentials(self):
        message = safe_error_message(RuntimeError("login failed password=hunter2 for user"))
        assert "hunter2" not in message
        assert message == "login failed password=***"

    def test_az_warnings_dropped_before_error(self):
        stderr = (
            "WARNING: This command is in preview and under development.\n"
            "WARNING: " + "The underlying Active Directory Graph API will be replaced. " * 5 + "\n"
            "ERROR: (OperationNotAllowed) Availability set change is not allowed.\n"
        )
        error = subprocess.CalledProcessError(1, ["az"], stderr=stderr)

        message = safe_error_message(error)

        assert message.startswith("ERROR: (OperationNotAllowed)")
        assert "preview" not in message

    def test_custom_max_length(self):
        message = safe_error_message(RuntimeError("x" * 500), max_length=1000)
        assert message == "x" * 500
