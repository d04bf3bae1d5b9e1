"""
Unit tests for bounded retries (dumpkeeper/backup/retry.py).
"""

import pytest

from dumpkeeper.backup.errors import AuthError, NetworkError, DiskFullError
from dumpkeeper.backup.retry import RetryPolicy, retry_call, NO_RETRY


class Flaky:
    """Callable failing with the given errors before returning 'done'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return 'done'


class TestRetryPolicy:
    """Test backoff delays."""

    def test_delays_grow_exponentially(self):
        policy = RetryPolicy(attempts=5, base_delay=1, max_delay=5)

        assert list(policy.delays()) == [1, 2, 4, 5]

    def test_single_attempt_has_no_delays(self):
        assert list(NO_RETRY.delays()) == []


class TestRetryCall:
    """Test retry_call behaviour per error class."""

    def test_transient_error_retried(self):
        sleeps = []
        fn = Flaky(NetworkError('timeout'), NetworkError('timeout'))

        result = retry_call(fn, RetryPolicy(attempts=3, base_delay=0.5), sleep=sleeps.append)

        assert result == 'done'
        assert fn.calls == 3
        assert sleeps == [0.5, 1.0]

    def test_non_transient_error_not_retried(self):
        fn = Flaky(AuthError('access denied'))

        with pytest.raises(AuthError):
            retry_call(fn, RetryPolicy(attempts=3), sleep=lambda _: None)

        assert fn.calls == 1

    def test_disk_full_not_retried(self):
        fn = Flaky(DiskFullError('no space'))

        with pytest.raises(DiskFullError):
            retry_call(fn, RetryPolicy(attempts=3), sleep=lambda _: None)

        assert fn.calls == 1

    def test_exhausted_attempts_raise_last_error(self):
        fn = Flaky(NetworkError('first'), NetworkError('second'), NetworkError('third'))

        with pytest.raises(NetworkError, match='third'):
            retry_call(fn, RetryPolicy(attempts=3), sleep=lambda _: None)

        assert fn.calls == 3

    def test_other_exceptions_propagate(self):
        fn = Flaky(KeyError('bug'))

        with pytest.raises(KeyError):
            retry_call(fn, RetryPolicy(attempts=3), sleep=lambda _: None)

        assert fn.calls == 1
