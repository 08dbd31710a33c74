"""Result Store — the single write path for test sets.

All mutations, including the concurrent result writes of a batch window,
go through one asyncio.Lock so that two cases finishing at the same moment
never overwrite each other's slot. Each write re-reads the latest test set,
applies the change, persists it and notifies subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from promptforge.core.exceptions import NotFoundError
from promptforge.testsets import operations
from promptforge.testsets.document_store import DocumentStore
from promptforge.testsets.types import ResultStatus, TestResult, TestSet

logger = logging.getLogger(__name__)

Listener = Callable[[TestSet], Awaitable[None] | None]


@dataclass(frozen=True)
class ResultStatistics:
    total_test_cases: int = 0
    completed_tests: int = 0
    failed_tests: int = 0
    pending_tests: int = 0
    running_tests: int = 0
    success_rate: float = 0.0
    average_execution_time: float = 0.0

    def to_dict(self) -> dict:
        return {
            "totalTestCases": self.total_test_cases,
            "completedTests": self.completed_tests,
            "failedTests": self.failed_tests,
            "pendingTests": self.pending_tests,
            "runningTests": self.running_tests,
            "successRate": self.success_rate,
            "averageExecutionTime": self.average_execution_time,
        }


@dataclass(frozen=True)
class ResultHistoryEntry:
    case_id: str
    version_identifier: str
    result: TestResult


class ResultStore:
    """Cache + lock in front of a DocumentStore.

    Usage:
        store = ResultStore(JsonFileDocumentStore(settings.data_dir))
        store.subscribe(on_change)
        await store.write(uid, case_id, "v3", result)
    """

    def __init__(self, documents: DocumentStore):
        self.documents = documents
        self._cache: dict[str, TestSet] = {}
        self._lock = asyncio.Lock()
        self._listeners: list[Listener] = []
        self._current_uid: str | None = None

    # --- Reads ---

    def get(self, uid: str) -> TestSet | None:
        cached = self._cache.get(uid)
        if cached is not None:
            return cached
        test_set = self.documents.load(uid)
        if test_set is not None:
            self._cache[uid] = test_set
        return test_set

    def require(self, uid: str) -> TestSet:
        test_set = self.get(uid)
        if test_set is None:
            raise NotFoundError(f"Test set not found: {uid}")
        return test_set

    def list(self) -> list[TestSet]:
        for test_set in self.documents.list():
            self._cache.setdefault(test_set.uid, test_set)
        return sorted(self._cache.values(), key=lambda ts: ts.created_at)

    @property
    def current(self) -> TestSet | None:
        """The test set the caller is looking at, always the latest written value."""
        if self._current_uid is None:
            return None
        return self.get(self._current_uid)

    def set_current(self, uid: str | None) -> TestSet | None:
        if uid is not None:
            self.require(uid)
        self._current_uid = uid
        return self.current

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Writes ---

    async def save(self, test_set: TestSet) -> TestSet:
        async with self._lock:
            self._persist(test_set)
        await self._notify(test_set)
        return test_set

    async def update(self, uid: str, mutate: Callable[[TestSet], TestSet]) -> TestSet:
        """Apply a pure mutation to the latest stored value of a test set."""
        async with self._lock:
            updated = mutate(self.require(uid))
            self._persist(updated)
        await self._notify(updated)
        return updated

    async def write(self, uid: str, case_id: str, version_identifier: str, result: TestResult) -> TestSet:
        """Replace the (case, version) result slot and persist."""
        return await self.update(
            uid, lambda ts: operations.update_test_result(ts, case_id, version_identifier, result)
        )

    async def delete(self, uid: str) -> bool:
        async with self._lock:
            existed = self.documents.delete(uid)
            existed = self._cache.pop(uid, None) is not None or existed
            if self._current_uid == uid:
                self._current_uid = None
        return existed

    def _persist(self, test_set: TestSet) -> None:
        self.documents.save(test_set)
        self._cache[test_set.uid] = test_set

    async def _notify(self, test_set: TestSet) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(test_set)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Test set listener failed for %s", test_set.uid)

    # --- Aggregation ---

    @staticmethod
    def statistics(test_set: TestSet, version_identifier: str | None = None) -> ResultStatistics:
        """Aggregate result states across the test set's cases.

        With a version identifier each case contributes its slot for that
        version; without one, its most recent result across all versions.
        A case with no result counts as pending.
        """
        total = len(test_set.test_cases)
        counts = {status: 0 for status in ResultStatus}
        execution_times: list[int] = []

        for case in test_set.test_cases:
            if version_identifier is not None:
                result = case.results.get(version_identifier)
            else:
                result = max(case.results.values(), key=lambda r: r.timestamp, default=None)

            if result is None:
                counts[ResultStatus.PENDING] += 1
                continue
            counts[result.status] += 1
            if result.status == ResultStatus.COMPLETED and result.execution_time is not None:
                execution_times.append(result.execution_time)

        completed = counts[ResultStatus.COMPLETED]
        return ResultStatistics(
            total_test_cases=total,
            completed_tests=completed,
            failed_tests=counts[ResultStatus.ERROR],
            pending_tests=counts[ResultStatus.PENDING],
            running_tests=counts[ResultStatus.RUNNING],
            success_rate=(completed / total * 100) if total else 0.0,
            average_execution_time=(sum(execution_times) / len(execution_times)) if execution_times else 0.0,
        )

    @staticmethod
    def history(
        test_set: TestSet,
        case_id: str | None = None,
        version_identifier: str | None = None,
    ) -> list[ResultHistoryEntry]:
        """Flattened result list, newest first."""
        if case_id is not None and test_set.get_case(case_id) is None:
            raise NotFoundError(f"Test case not found: {case_id}")

        entries = [
            ResultHistoryEntry(case_id=case.id, version_identifier=identifier, result=result)
            for case in test_set.test_cases
            if case_id is None or case.id == case_id
            for identifier, result in case.results.items()
            if version_identifier is None or identifier == version_identifier
        ]
        entries.sort(key=lambda e: e.result.timestamp, reverse=True)
        return entries
