"""
Retry helper tests.

Verifies:
- a lost version race is retried with a rolled-back session
- the last conflict propagates once attempts run out
- other errors are never retried
"""

import pytest
from sqlalchemy.orm.exc import StaleDataError

from valet.services.concurrency import run_with_retry


class _Flaky:
    def __init__(self, failures, exc=StaleDataError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("ticket row changed underneath")
        return "done"


class TestRunWithRetry:

    def test_retries_lost_race(self, db_session):
        op = _Flaky(failures=2)
        assert run_with_retry(op, backoff_base=0) == "done"
        assert op.calls == 3

    def test_gives_up_after_attempts(self, db_session, caplog):
        op = _Flaky(failures=5)
        with pytest.raises(StaleDataError):
            run_with_retry(op, attempts=2, backoff_base=0, label="mark ready")
        assert op.calls == 2
        assert "mark ready still conflicting after 2 attempts" in caplog.text

    def test_other_errors_not_retried(self, db_session):
        op = _Flaky(failures=1, exc=ValueError)
        with pytest.raises(ValueError):
            run_with_retry(op, backoff_base=0)
        assert op.calls == 1
