"""Batch Executor — run many test cases in fixed-size windows.

Cases are split into windows of `concurrency_limit`, preserving order.
Windows run one after another; the cases inside a window run concurrently.
Cancellation is cooperative: the token is checked before and after each
window, and an in-flight call is always allowed to finish.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from promptforge.core.config import settings
from promptforge.core.exceptions import BatchAlreadyRunningError, NotFoundError
from promptforge.core.metrics import BATCH_RUNS
from promptforge.testsets.executor import TestExecutor
from promptforge.testsets.operations import create_test_result
from promptforge.testsets.types import ResultStatus, Selection, TestCase, TestSet, Version

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Execution was cancelled"


@dataclass
class BatchProgress:
    total: int
    completed: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    def to_dict(self) -> dict:
        return {"total": self.total, "completed": self.completed, "failed": self.failed, "processed": self.processed}


ProgressCallback = Callable[[BatchProgress], Awaitable[None] | None]


@dataclass
class BatchReport:
    test_set_uid: str
    version_identifier: str
    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: bool = False
    windows: list[list[str]] = field(default_factory=list)  # case ids per executed window

    def to_dict(self) -> dict:
        return {
            "testSetUid": self.test_set_uid,
            "versionIdentifier": self.version_identifier,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
        }


class CancellationToken:
    """Cooperative cancel flag shared between a running batch and its callers."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


SlotKey = tuple[str, str, str]  # (test_set_uid, case_id, version_identifier)


class ExecutionRegistry:
    """What is executing right now.

    Tracks a CancellationToken per test set with a running batch, and the
    set of (test set, case, version) slots with a call in flight. A slot
    is claimed by at most one execution at a time.
    """

    def __init__(self):
        self._tokens: dict[str, CancellationToken] = {}
        self._slots: set[SlotKey] = set()

    def start(self, uid: str) -> CancellationToken:
        if uid in self._tokens:
            raise BatchAlreadyRunningError(f"A batch is already running for test set {uid}")
        token = CancellationToken()
        self._tokens[uid] = token
        return token

    def finish(self, uid: str) -> None:
        self._tokens.pop(uid, None)

    def cancel(self, uid: str) -> bool:
        """Request cancellation. Returns False if nothing is running."""
        token = self._tokens.get(uid)
        if token is None:
            return False
        token.cancel()
        return True

    def is_running(self, uid: str) -> bool:
        return uid in self._tokens

    def running(self) -> list[str]:
        return list(self._tokens)

    def claim(self, uid: str, case_id: str, identifier: str) -> bool:
        """Mark a slot as executing. Returns False if it already is."""
        key = (uid, case_id, identifier)
        if key in self._slots:
            return False
        self._slots.add(key)
        return True

    def release(self, uid: str, case_id: str, identifier: str) -> None:
        self._slots.discard((uid, case_id, identifier))

    def is_executing(self, uid: str, case_id: str, identifier: str) -> bool:
        return (uid, case_id, identifier) in self._slots


def select_cases(test_set: TestSet, version_identifier: str, selection: Selection) -> list[TestCase]:
    """Cases a batch should run: everything, or those without a result or with an errored one."""
    if selection == Selection.ALL:
        return list(test_set.test_cases)
    return [
        case
        for case in test_set.test_cases
        if (result := case.results.get(version_identifier)) is None or result.status == ResultStatus.ERROR
    ]


def make_windows(cases: list[TestCase], size: int) -> list[list[TestCase]]:
    size = max(1, size)
    return [cases[i : i + size] for i in range(0, len(cases), size)]


class BatchExecutor:
    """Schedules TestExecutor runs under a concurrency cap.

    Usage:
        batch = BatchExecutor(executor)
        report = await batch.run_all(test_set, version, "v3")

        # From another task:
        batch.registry.cancel(test_set.uid)
    """

    def __init__(
        self,
        executor: TestExecutor,
        registry: ExecutionRegistry | None = None,
        *,
        concurrency_limit: int | None = None,
        window_delay: float | None = None,
    ):
        self.executor = executor
        self.registry = registry or ExecutionRegistry()
        self.concurrency_limit = concurrency_limit or settings.concurrency_limit
        self.window_delay = settings.window_delay if window_delay is None else window_delay

    async def run_all(
        self,
        test_set: TestSet,
        version: Version,
        version_identifier: str | None = None,
        selection: Selection = Selection.PENDING,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> BatchReport:
        """Run the selected cases and return the aggregate outcome.

        Raises ConfigurationError before any case starts if the version
        cannot be executed, and BatchAlreadyRunningError if this test set
        already has a batch in flight. When `token` is given the caller has
        already registered it via registry.start(). Cases already executing
        for this version outside the batch are skipped.
        """
        identifier = version_identifier or version.default_identifier
        report = BatchReport(test_set_uid=test_set.uid, version_identifier=identifier)

        cases = select_cases(test_set, identifier, selection)
        busy = [case.id for case in cases if self.registry.is_executing(test_set.uid, case.id, identifier)]
        if busy:
            logger.info("Skipping %d test cases already executing: %s", len(busy), ", ".join(busy))
            cases = [case for case in cases if case.id not in busy]
        if not cases:
            logger.info("No tests to run for test set %s (%s)", test_set.uid, identifier)
            if token is not None:
                self.registry.finish(test_set.uid)
            return report

        if token is None:
            token = self.registry.start(test_set.uid)

        for case in cases:
            self.registry.claim(test_set.uid, case.id, identifier)
        try:
            self.executor.check_preconditions(version)
            await self._run_windows(test_set, version, identifier, cases, report, token, on_progress)
        finally:
            for case in cases:
                self.registry.release(test_set.uid, case.id, identifier)
            self.registry.finish(test_set.uid)

        outcome = "cancelled" if report.cancelled else "completed"
        BATCH_RUNS.labels(outcome=outcome).inc()
        logger.info(
            "Batch execution %s for test set %s: %d successful, %d failed of %d",
            outcome,
            test_set.uid,
            report.completed,
            report.failed,
            report.total,
        )
        return report

    async def _run_windows(
        self,
        test_set: TestSet,
        version: Version,
        identifier: str,
        cases: list[TestCase],
        report: BatchReport,
        token: CancellationToken,
        on_progress: ProgressCallback | None,
    ) -> None:
        windows = make_windows(cases, self.concurrency_limit)
        progress = BatchProgress(total=len(cases))
        report.total = len(cases)
        logger.info(
            "Starting batch execution for %d test cases in %d windows of %d",
            len(cases),
            len(windows),
            self.concurrency_limit,
        )

        for index, window in enumerate(windows):
            if token.cancelled:
                await self._cancel_remaining(test_set.uid, identifier, windows[index:], report)
                return

            logger.debug("Executing window %d/%d with %d tests", index + 1, len(windows), len(window))
            results = await asyncio.gather(
                *(self.executor.run(test_set, case.id, version, identifier) for case in window),
                return_exceptions=True,
            )
            report.windows.append([case.id for case in window])

            for case, result in zip(window, results):
                if isinstance(result, BaseException):
                    logger.error("Test case %s raised during batch: %r", case.id, result)
                    progress.failed += 1
                elif result.status == ResultStatus.COMPLETED:
                    progress.completed += 1
                else:
                    progress.failed += 1
            report.completed, report.failed = progress.completed, progress.failed
            await self._report_progress(on_progress, progress)

            if token.cancelled:
                await self._cancel_remaining(test_set.uid, identifier, windows[index + 1 :], report)
                return

            if index < len(windows) - 1 and self.window_delay > 0:
                await asyncio.sleep(self.window_delay)

    async def _cancel_remaining(
        self,
        uid: str,
        identifier: str,
        windows: list[list[TestCase]],
        report: BatchReport,
    ) -> None:
        report.cancelled = True
        remaining = [case for window in windows for case in window]
        logger.info("Batch execution for test set %s cancelled; %d tests not started", uid, len(remaining))
        for case in remaining:
            try:
                await self.executor.store.write(
                    uid, case.id, identifier, create_test_result(status=ResultStatus.ERROR, error=CANCELLED_MESSAGE)
                )
            except NotFoundError as e:
                logger.warning("Could not mark test case %s cancelled: %s", case.id, e.message)

    @staticmethod
    async def _report_progress(on_progress: ProgressCallback | None, progress: BatchProgress) -> None:
        if on_progress is None:
            return
        outcome = on_progress(progress)
        if inspect.isawaitable(outcome):
            await outcome
