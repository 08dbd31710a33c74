"""Tests for the Result Store: serialized writes, notification, statistics."""

import asyncio

import pytest

from promptforge.core.exceptions import NotFoundError
from promptforge.testsets import operations
from promptforge.testsets.result_store import ResultStore
from promptforge.testsets.types import ResultStatus, TestResult


class TestWrites:
    @pytest.mark.asyncio
    async def test_write_persists_and_returns_updated(self, store, make_test_set):
        ts = await make_test_set(cases=1)
        case_id = ts.test_cases[0].id

        updated = await store.write(ts.uid, case_id, "v1", TestResult(content="out", status=ResultStatus.COMPLETED))

        assert updated.get_case(case_id).results["v1"].content == "out"
        assert store.documents.load(ts.uid) == updated

    @pytest.mark.asyncio
    async def test_concurrent_writes_do_not_lose_updates(self, store, make_test_set):
        ts = await make_test_set(cases=10)

        await asyncio.gather(
            *(
                store.write(ts.uid, case.id, "v1", TestResult(content=case.id, status=ResultStatus.COMPLETED))
                for case in ts.test_cases
            )
        )

        saved = store.documents.load(ts.uid)
        assert all(case.results["v1"].content == case.id for case in saved.test_cases)

    @pytest.mark.asyncio
    async def test_write_unknown_test_set(self, store):
        with pytest.raises(NotFoundError):
            await store.write("missing", "c", "v1", TestResult())

    @pytest.mark.asyncio
    async def test_current_is_republished(self, store, make_test_set):
        ts = await make_test_set(cases=1)
        store.set_current(ts.uid)

        await store.write(ts.uid, ts.test_cases[0].id, "v1", TestResult(status=ResultStatus.RUNNING))

        assert store.current.test_cases[0].results["v1"].status == ResultStatus.RUNNING

    @pytest.mark.asyncio
    async def test_subscribers_are_notified(self, store, make_test_set):
        ts = await make_test_set(cases=1)
        seen = []
        unsubscribe = store.subscribe(lambda updated: seen.append(updated.uid))

        await store.write(ts.uid, ts.test_cases[0].id, "v1", TestResult())
        unsubscribe()
        await store.write(ts.uid, ts.test_cases[0].id, "v1", TestResult())

        assert seen == [ts.uid]

    @pytest.mark.asyncio
    async def test_delete(self, store, make_test_set):
        ts = await make_test_set()
        assert await store.delete(ts.uid)
        assert store.get(ts.uid) is None
        assert not await store.delete(ts.uid)


class TestStatistics:
    def _with_results(self, statuses):
        ts = operations.create_test_set("Stats", "p")
        for status in statuses:
            ts = operations.add_test_case(ts)
            if status is not None:
                ts = operations.update_test_result(
                    ts, ts.test_cases[-1].id, "v1", TestResult(status=status, execution_time=100)
                )
        return ts

    def test_two_completed_one_error_one_missing(self):
        ts = self._with_results([ResultStatus.COMPLETED, ResultStatus.COMPLETED, ResultStatus.ERROR, None])

        stats = ResultStore.statistics(ts, "v1")

        assert stats.total_test_cases == 4
        assert stats.completed_tests == 2
        assert stats.failed_tests == 1
        assert stats.pending_tests == 1
        assert stats.success_rate == 50.0
        assert stats.average_execution_time == 100

    def test_empty_test_set(self):
        stats = ResultStore.statistics(operations.create_test_set("Empty", "p"))
        assert stats.total_test_cases == 0
        assert stats.success_rate == 0.0
        assert stats.average_execution_time == 0.0

    def test_average_only_over_completed(self):
        ts = operations.create_test_set("Avg", "p")
        ts = operations.add_test_case(operations.add_test_case(ts))
        a, b = (c.id for c in ts.test_cases)
        ts = operations.update_test_result(ts, a, "v1", TestResult(status=ResultStatus.COMPLETED, execution_time=200))
        ts = operations.update_test_result(ts, b, "v1", TestResult(status=ResultStatus.ERROR, execution_time=5000))

        assert ResultStore.statistics(ts, "v1").average_execution_time == 200

    def test_without_identifier_uses_latest_result_per_case(self):
        ts = operations.create_test_set("Latest", "p")
        ts = operations.add_test_case(ts)
        case_id = ts.test_cases[0].id
        old = TestResult(status=ResultStatus.ERROR, timestamp="2024-01-01T00:00:00+00:00")
        new = TestResult(status=ResultStatus.COMPLETED, timestamp="2024-06-01T00:00:00+00:00")
        ts = operations.update_test_result(ts, case_id, "v2", new)
        ts = operations.update_test_result(ts, case_id, "v1", old)

        stats = ResultStore.statistics(ts)

        assert stats.completed_tests == 1
        assert stats.failed_tests == 0
        assert stats.success_rate == 100.0

    def test_running_counted(self):
        stats = ResultStore.statistics(self._with_results([ResultStatus.RUNNING, ResultStatus.PENDING]), "v1")
        assert stats.running_tests == 1
        assert stats.pending_tests == 1


class TestHistory:
    def test_newest_first_and_filters(self):
        ts = operations.add_test_case(operations.create_test_set("History", "p"))
        case_id = ts.test_cases[0].id
        ts = operations.update_test_result(ts, case_id, "v1", TestResult(timestamp="2024-01-01T00:00:00+00:00"))
        ts = operations.update_test_result(ts, case_id, "v2", TestResult(timestamp="2024-02-01T00:00:00+00:00"))

        history = ResultStore.history(ts)
        assert [e.version_identifier for e in history] == ["v2", "v1"]
        assert [e.version_identifier for e in ResultStore.history(ts, version_identifier="v1")] == ["v1"]

    def test_unknown_case(self):
        ts = operations.create_test_set("History", "p")
        with pytest.raises(NotFoundError):
            ResultStore.history(ts, case_id="missing")
