"""
Pytest tests for run_settled: per-call outcomes, input order and timeouts.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest


@pytest.fixture
def executor():
    ex = ThreadPoolExecutor(max_workers=4)
    yield ex
    ex.shutdown(wait=False)


def test_all_succeed_in_input_order(executor):
    from backend_credit.core.settled import first_failure, run_settled

    outcomes = run_settled([("a", lambda: 1), ("b", lambda: 2)], executor, timeout=5.0)
    assert [o.name for o in outcomes] == ["a", "b"]
    assert [o.unwrap() for o in outcomes] == [1, 2]
    assert first_failure(outcomes) is None


def test_partial_failure_is_reported_not_defaulted(executor):
    """A failing call yields an error outcome; the other call's value is kept."""
    from backend_credit.core.settled import first_failure, run_settled

    def boom():
        raise RuntimeError("store down")

    outcomes = run_settled([("profile", lambda: {"ok": True}), ("history", boom)], executor, timeout=5.0)
    assert outcomes[0].ok
    assert outcomes[0].value == {"ok": True}
    failed = first_failure(outcomes)
    assert failed is outcomes[1]
    assert isinstance(failed.error, RuntimeError)
    with pytest.raises(RuntimeError):
        failed.unwrap()


def test_slow_call_times_out(executor):
    from backend_credit.core.exceptions import StoreTimeoutError
    from backend_credit.core.settled import run_settled

    release = threading.Event()
    outcomes = run_settled([("slow", lambda: release.wait(5.0))], executor, timeout=0.05)
    release.set()
    assert not outcomes[0].ok
    assert isinstance(outcomes[0].error, StoreTimeoutError)
    assert outcomes[0].error.details["call"] == "slow"
