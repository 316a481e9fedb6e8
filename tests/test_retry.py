"""Tests for the retry strategy and error classification."""

import pytest
from botocore.exceptions import ClientError

from converge.config import RetrySettings
from converge.utils.errors import (
    ErrorHandler,
    ProviderFatalError,
    ProviderTransientError,
)
from converge.utils.retry import RetryStrategy


def _client_error(code):
    return ClientError({"Error": {"Code": code, "Message": "boom"}}, "CreateBucket")


class _Flaky:
    """Fails with the given errors, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestRetryStrategy:
    def test_transient_errors_are_retried(self):
        sleeps = []
        strategy = RetryStrategy(max_retries=3, base_delay=1.0, jitter=False, sleep=sleeps.append)
        func = _Flaky(ProviderTransientError("slow"), ProviderTransientError("slow"))

        assert strategy.execute_with_retry(func, description="create x") == "ok"
        assert func.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_fatal_errors_are_raised_immediately(self):
        strategy = RetryStrategy(sleep=lambda delay: None)
        func = _Flaky(ProviderFatalError("denied"))

        with pytest.raises(ProviderFatalError):
            strategy.execute_with_retry(func)
        assert func.calls == 1

    def test_retries_are_bounded(self):
        strategy = RetryStrategy(max_retries=2, sleep=lambda delay: None)
        func = _Flaky(*[ProviderTransientError("slow") for _ in range(5)])

        with pytest.raises(ProviderTransientError):
            strategy.execute_with_retry(func)
        assert func.calls == 3

    def test_delay_is_capped(self):
        strategy = RetryStrategy(base_delay=1.0, max_delay=5.0, jitter=False)
        assert strategy.get_delay(10) == 5.0

    def test_jitter_stays_within_ten_percent(self):
        strategy = RetryStrategy(base_delay=2.0, jitter=True)
        for _ in range(20):
            assert 2.0 <= strategy.get_delay(0) <= 2.2

    def test_from_settings(self):
        settings = RetrySettings(max_retries=7, base_delay=0.1, jitter=False)
        strategy = RetryStrategy.from_settings(settings)
        assert strategy.max_retries == 7
        assert strategy.get_delay(1) == pytest.approx(0.2)


class TestErrorHandler:
    def test_throttling_is_transient(self):
        error = ErrorHandler().handle_exception(_client_error("ThrottlingException"))
        assert isinstance(error, ProviderTransientError)
        assert error.retryable

    def test_not_found_is_fatal_unless_after_write(self):
        handler = ErrorHandler()
        assert isinstance(handler.handle_exception(_client_error("NoSuchEntity")), ProviderFatalError)
        assert isinstance(
            handler.handle_exception(_client_error("NoSuchEntity"), after_write=True),
            ProviderTransientError
        )

    def test_network_errors_are_transient(self):
        error = ErrorHandler().handle_exception(ConnectionError("reset"))
        assert isinstance(error, ProviderTransientError)

    def test_unknown_errors_are_fatal(self):
        error = ErrorHandler().handle_exception(RuntimeError("bug"))
        assert isinstance(error, ProviderFatalError)
        assert error.cause is not None

    def test_converge_errors_pass_through(self):
        original = ProviderTransientError("slow")
        assert ErrorHandler().handle_exception(original) is original
