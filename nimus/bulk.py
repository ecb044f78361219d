"""Run one task per item concurrently and collect the results in order."""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Sequence, TypeVar

from .errors import PartialBatchFailure
from .types import BulkResult
from .utils import Metrics

logger = logging.getLogger("nimus.bulk")

I = TypeVar("I")
T = TypeVar("T")


class TaskContext:
    """Everything one unit of a batch owns: its item, position and timer."""

    def __init__(self, item, index: int, label: str):
        self.item = item
        self.index = index
        self.label = label
        self.metrics = Metrics()


def for_each(
    items: Sequence[I],
    task: Callable[[I], T | None],
    *,
    label: Callable[[I], str] = str,
    max_workers: int | None = None,
) -> list[BulkResult[T]]:
    """Run ``task`` for every item and wait for all of them.

    A failing task yields ``{"item": None, ...}`` instead of aborting its
    siblings. When the batch has exactly one item the task's exception is
    raised to the caller instead.

    :param items: Work items, in submission order
    :param task: Called once per item; its return value becomes ``item``
    :param label: Names an item in failure logs
    :param max_workers: Worker cap (default: one worker per item)
    :return: One result per item, in submission order
    """
    contexts = [TaskContext(item, i, label(item)) for i, item in enumerate(items)]
    if not contexts:
        return []

    def run(ctx: TaskContext) -> BulkResult:
        ctx.metrics = Metrics()
        if len(contexts) == 1:
            return {"item": task(ctx.item), "metrics": ctx.metrics}
        try:
            return {"item": task(ctx.item), "metrics": ctx.metrics}
        except Exception as e:
            logger.error(f"({ctx.label}) operation failed: {e}")
            logger.debug(f"({ctx.label}) failure detail", exc_info=True)
            return {"item": None, "metrics": ctx.metrics}

    workers = max_workers or len(contexts)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="nimus") as executor:
        futures = [executor.submit(run, ctx) for ctx in contexts]
        return [future.result() for future in futures]


def failures(results: Iterable[BulkResult]) -> int:
    return sum(1 for r in results if r["item"] is None)


def raise_for_failures(results: list[BulkResult]) -> None:
    """:raises PartialBatchFailure: If any unit of the batch failed"""
    failed = failures(results)
    if failed:
        raise PartialBatchFailure(failed, len(results))


def numbered_names(base: str, count: int) -> list[str]:
    """Instance names for a create batch: ``base`` alone, or ``base-1..base-N``."""
    if count < 1:
        raise ValueError(f"count must be at least 1, got {count}")
    if count == 1:
        return [base]
    return [f"{base}-{i}" for i in range(1, count + 1)]


def resolve_candidates(names: Iterable[str], name: str) -> list[str]:
    """Names a removal request refers to.

    An exact match wins; otherwise every generated ``{name}-N`` sibling.
    """
    names = list(names)
    if name in names:
        return [name]
    pattern = re.compile(rf"^{re.escape(name)}-\d+$")
    return [n for n in names if pattern.match(n)]
