"""TestSetService — the caller-facing API of the execution engine.

Composes the Result Store, the executors and the execution registry.
Every method takes a test set uid and raises NotFoundError for unknown
uids. Mutations are pure functions from `operations` applied through
ResultStore.update(), so they serialize with in-flight result writes.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from promptforge.core.exceptions import (
    BatchAlreadyRunningError,
    CaseAlreadyRunningError,
    NotFoundError,
    ValidationError,
)
from promptforge.gateway.invoker import BaseModelInvoker
from promptforge.testsets import operations, variable_sync
from promptforge.testsets.batch import (
    BatchExecutor,
    BatchProgress,
    BatchReport,
    CancellationToken,
    ExecutionRegistry,
    ProgressCallback,
)
from promptforge.testsets.executor import TestExecutor
from promptforge.testsets.result_store import ResultHistoryEntry, ResultStatistics, ResultStore
from promptforge.testsets.types import Selection, TestResult, TestSet, Version
from promptforge.testsets.variable_sync import VariableDiff, VariableSyncResult

logger = logging.getLogger(__name__)


class TestSetService:
    """Usage:
        service = TestSetService(ResultStore(JsonFileDocumentStore(settings.data_dir)), invoker)
        ts = await service.create_test_set("Greetings", project_uid)
        await service.run_all_tests(ts.uid, version)
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        store: ResultStore,
        invoker: BaseModelInvoker,
        *,
        executor: TestExecutor | None = None,
        batch: BatchExecutor | None = None,
    ):
        self.store = store
        self.invoker = invoker
        self.executor = executor or TestExecutor(store, invoker)
        self.batch = batch or BatchExecutor(self.executor)
        self._progress: dict[str, BatchProgress] = {}
        self._reports: dict[str, BatchReport] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def registry(self) -> ExecutionRegistry:
        return self.batch.registry

    # --- Test sets ---

    async def create_test_set(self, name: str, project_uid: str) -> TestSet:
        test_set = operations.create_test_set(name, project_uid)
        if operations.test_set_name_exists(test_set.name, project_uid, self.store.list()):
            raise ValidationError(f"A test set named {test_set.name!r} already exists in this project")
        await self.store.save(test_set)
        logger.info("Created test set %s (%s)", test_set.uid, test_set.name)
        return test_set

    def list_test_sets(self, project_uid: str | None = None) -> list[TestSet]:
        test_sets = self.store.list()
        if project_uid is None:
            return test_sets
        return [ts for ts in test_sets if ts.associated_project_uid == project_uid]

    def get_test_set(self, uid: str) -> TestSet:
        return self.store.require(uid)

    def generate_unique_name(self, base_name: str, project_uid: str) -> str:
        return operations.generate_unique_test_set_name(base_name, project_uid, self.store.list())

    async def rename_test_set(self, uid: str, name: str) -> TestSet:
        test_set = self.store.require(uid)
        if operations.test_set_name_exists(name.strip(), test_set.associated_project_uid, self.store.list(), uid):
            raise ValidationError(f"A test set named {name.strip()!r} already exists in this project")
        return await self.store.update(uid, lambda ts: operations.rename_test_set(ts, name))

    async def delete_test_set(self, uid: str) -> None:
        self.store.require(uid)
        self.registry.cancel(uid)
        await self.store.delete(uid)
        self._progress.pop(uid, None)
        self._reports.pop(uid, None)
        logger.info("Deleted test set %s", uid)

    # --- Test cases ---

    async def add_test_case(self, uid: str) -> TestSet:
        return await self.store.update(uid, operations.add_test_case)

    async def import_test_cases(self, uid: str, cases: Sequence[Mapping[str, Any]]) -> TestSet:
        return await self.store.update(uid, lambda ts: operations.add_test_cases_from_import(ts, cases))

    async def duplicate_test_case(self, uid: str, case_id: str) -> TestSet:
        return await self.store.update(uid, lambda ts: operations.duplicate_test_case(ts, case_id))

    async def update_test_case(self, uid: str, case_id: str, variable_values: Mapping[str, str]) -> TestSet:
        return await self.store.update(uid, lambda ts: operations.update_test_case(ts, case_id, variable_values))

    async def update_test_case_messages(self, uid: str, case_id: str, messages: Sequence[Any]) -> TestSet:
        return await self.store.update(uid, lambda ts: operations.update_test_case_messages(ts, case_id, messages))

    async def delete_test_case(self, uid: str, case_id: str) -> TestSet:
        return await self.store.update(uid, lambda ts: operations.delete_test_case(ts, case_id))

    async def bulk_delete_test_cases(self, uid: str, case_ids: Sequence[str]) -> TestSet:
        return await self.store.update(uid, lambda ts: operations.bulk_delete_test_cases(ts, case_ids))

    async def update_ui_state(self, uid: str, selected_comparison_version: str | None) -> TestSet:
        return await self.store.update(uid, lambda ts: operations.update_ui_state(ts, selected_comparison_version))

    # --- Variables ---

    def detect_variable_differences(self, uid: str, template_names: Sequence[str]) -> VariableDiff:
        return variable_sync.diff(self.store.require(uid), template_names)

    async def synchronize_variables(self, uid: str, template_names: Sequence[str]) -> VariableSyncResult:
        outcome: list[VariableSyncResult] = []

        def _sync(test_set: TestSet) -> TestSet:
            result = variable_sync.synchronize(test_set, template_names)
            outcome.append(result)
            return result.updated_test_set

        await self.store.update(uid, _sync)
        return outcome[0]

    def validate_synchronization(
        self, uid: str, template_names: Sequence[str], require_aligned: bool = True
    ) -> VariableDiff:
        return variable_sync.validate(self.store.require(uid), template_names, require_aligned=require_aligned)

    # --- Execution ---

    async def run_single_test(
        self,
        uid: str,
        case_id: str,
        version: Version,
        version_identifier: str | None = None,
    ) -> TestResult:
        test_set = self.store.require(uid)
        if test_set.get_case(case_id) is None:
            raise NotFoundError(f"Test case not found: {case_id}")
        if self.registry.is_running(uid):
            raise BatchAlreadyRunningError(f"A batch is already running for test set {uid}")
        identifier = version_identifier or version.default_identifier
        if not self.registry.claim(uid, case_id, identifier):
            raise CaseAlreadyRunningError(f"Test case {case_id} is already running for {identifier}")
        try:
            return await self.executor.run(test_set, case_id, version, identifier)
        finally:
            self.registry.release(uid, case_id, identifier)

    async def run_all_tests(
        self,
        uid: str,
        version: Version,
        version_identifier: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> BatchReport:
        """Run cases that have no result for this version yet, or whose last run errored."""
        return await self._run_batch(uid, version, version_identifier, Selection.PENDING, on_progress)

    async def run_all_tests_forced(
        self,
        uid: str,
        version: Version,
        version_identifier: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> BatchReport:
        """Re-run every case regardless of its current result."""
        return await self._run_batch(uid, version, version_identifier, Selection.ALL, on_progress)

    async def start_batch(
        self,
        uid: str,
        version: Version,
        version_identifier: str | None = None,
        selection: Selection = Selection.PENDING,
    ) -> CancellationToken:
        """Register a batch and run it as a background task.

        Preconditions and the one-batch-per-test-set rule are checked before
        returning, so callers get ConfigurationError / BatchAlreadyRunningError
        synchronously.
        """
        test_set = self.store.require(uid)
        self.executor.check_preconditions(version)
        token = self.registry.start(uid)
        self._progress[uid] = BatchProgress(total=0)

        task = asyncio.create_task(self._run_background(test_set, version, version_identifier, selection, token))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return token

    def cancel_batch_execution(self, uid: str) -> bool:
        cancelled = self.registry.cancel(uid)
        if cancelled:
            logger.info("Cancellation requested for test set %s", uid)
        return cancelled

    def is_batch_running(self, uid: str) -> bool:
        return self.registry.is_running(uid)

    def batch_progress(self, uid: str) -> BatchProgress | None:
        return self._progress.get(uid)

    def last_batch_report(self, uid: str) -> BatchReport | None:
        return self._reports.get(uid)

    async def wait_for_background_tasks(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        for uid in self.registry.running():
            self.registry.cancel(uid)
        await self.wait_for_background_tasks()

    async def _run_batch(
        self,
        uid: str,
        version: Version,
        version_identifier: str | None,
        selection: Selection,
        on_progress: ProgressCallback | None,
    ) -> BatchReport:
        test_set = self.store.require(uid)
        report = await self.batch.run_all(
            test_set, version, version_identifier, selection, on_progress=self._tracker(uid, on_progress)
        )
        self._reports[uid] = report
        return report

    async def _run_background(
        self,
        test_set: TestSet,
        version: Version,
        version_identifier: str | None,
        selection: Selection,
        token: CancellationToken,
    ) -> None:
        try:
            report = await self.batch.run_all(
                test_set, version, version_identifier, selection, on_progress=self._tracker(test_set.uid), token=token
            )
            self._reports[test_set.uid] = report
        except Exception:
            logger.exception("Background batch failed for test set %s", test_set.uid)

    def _tracker(self, uid: str, on_progress: ProgressCallback | None = None) -> ProgressCallback:
        async def _track(progress: BatchProgress) -> None:
            self._progress[uid] = progress
            if on_progress is not None:
                outcome = on_progress(progress)
                if inspect.isawaitable(outcome):
                    await outcome

        return _track

    # --- Results ---

    async def clear_test_result(self, uid: str, case_id: str, version_identifier: str) -> TestSet:
        return await self.store.update(uid, lambda ts: operations.clear_test_result(ts, case_id, version_identifier))

    def get_statistics(self, uid: str, version_identifier: str | None = None) -> ResultStatistics:
        return ResultStore.statistics(self.store.require(uid), version_identifier)

    def get_result_history(
        self,
        uid: str,
        case_id: str | None = None,
        version_identifier: str | None = None,
    ) -> list[ResultHistoryEntry]:
        return ResultStore.history(self.store.require(uid), case_id, version_identifier)
