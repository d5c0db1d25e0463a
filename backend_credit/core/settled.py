"""
Parallel fan-out with structured per-call outcomes.

run_settled() runs independent callables on an executor and returns one
Settled per call (value or error), in input order. Nothing is defaulted to
None on failure; callers decide how to treat partial failure. Every wait is
bounded by a timeout; a call that does not finish in time settles with
StoreTimeoutError.
"""

from __future__ import annotations

import time
from concurrent.futures import Executor, Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Generic, Sequence, TypeVar

from backend_credit.core.exceptions import StoreTimeoutError

T = TypeVar("T")


@dataclass(frozen=True)
class Settled(Generic[T]):
    """Outcome of one call: ok with value, or failed with error."""

    name: str
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return value or re-raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def run_settled(
    calls: Sequence[tuple[str, Callable[[], Any]]],
    executor: Executor,
    *,
    timeout: float,
) -> list[Settled[Any]]:
    """
    Submit each (name, fn) to executor and wait at most `timeout` seconds in
    total. Returns Settled outcomes in input order.
    """
    futures: list[tuple[str, Future[Any]]] = [
        (name, executor.submit(fn)) for name, fn in calls
    ]
    deadline = time.monotonic() + max(0.0, timeout)
    outcomes: list[Settled[Any]] = []
    for name, fut in futures:
        remaining = max(0.0, deadline - time.monotonic())
        try:
            outcomes.append(Settled(name=name, value=fut.result(timeout=remaining)))
        except FutureTimeoutError:
            fut.cancel()
            outcomes.append(
                Settled(
                    name=name,
                    error=StoreTimeoutError(
                        f"{name} did not complete within {timeout:.2f}s",
                        call=name,
                        timeout_sec=timeout,
                    ),
                )
            )
        except Exception as e:
            outcomes.append(Settled(name=name, error=e))
    return outcomes


def first_failure(outcomes: Sequence[Settled[Any]]) -> Settled[Any] | None:
    """Return the first failed outcome, or None if all succeeded."""
    for outcome in outcomes:
        if not outcome.ok:
            return outcome
    return None
