from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from contextvars import copy_context
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, TypeVar

from .cancel import CancelToken, ensure_token
from .errors import OperationCancelledError

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class TaskOutcome(Generic[T, R]):
    item: T
    value: R | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_bounded(
    items: Iterable[T],
    fn: Callable[[T], R],
    *,
    max_workers: int,
    cancel: CancelToken | None = None,
) -> list[TaskOutcome[T, R]]:
    """
    Run ``fn`` over ``items`` with at most ``max_workers`` in flight.

    One outcome per item, in input order. A failing item never aborts its
    siblings; items that have not started when ``cancel`` fires are reported
    with an :class:`OperationCancelledError`.
    """
    cancel = ensure_token(cancel)
    work = list(items)
    if not work:
        return []

    def _guarded(item: T) -> TaskOutcome[T, R]:
        if cancel.cancelled:
            return TaskOutcome(item=item, error=OperationCancelledError("skipped after cancellation"))
        try:
            return TaskOutcome(item=item, value=fn(item))
        except Exception as e:  # noqa: BLE001 - captured per item
            return TaskOutcome(item=item, error=e)

    if max_workers <= 1 or len(work) == 1:
        return [_guarded(item) for item in work]

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(copy_context().run, _guarded, item) for item in work]
        return [f.result() for f in futures]
