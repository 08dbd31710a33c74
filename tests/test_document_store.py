"""Tests for the document store backends."""

import json

import pytest

from promptforge.core.exceptions import ValidationError
from promptforge.testsets import operations
from promptforge.testsets.document_store import InMemoryDocumentStore, JsonFileDocumentStore
from promptforge.testsets.types import ResultStatus, TestResult


@pytest.fixture
def test_set():
    ts = operations.add_test_case(operations.create_test_set("Stored", "proj-1"))
    return operations.update_test_result(
        ts, ts.test_cases[0].id, "v1", TestResult(content="out", status=ResultStatus.COMPLETED, execution_time=42)
    )


class TestInMemoryDocumentStore:
    def test_save_load_delete(self, test_set):
        docs = InMemoryDocumentStore()
        assert docs.load(test_set.uid) is None

        docs.save(test_set)
        assert docs.load(test_set.uid) == test_set
        assert docs.list() == [test_set]

        assert docs.delete(test_set.uid)
        assert not docs.delete(test_set.uid)


class TestJsonFileDocumentStore:
    def test_round_trip(self, tmp_path, test_set):
        docs = JsonFileDocumentStore(tmp_path / "sets")
        docs.save(test_set)

        assert (tmp_path / "sets" / f"{test_set.uid}.json").exists()
        assert docs.load(test_set.uid) == test_set
        assert JsonFileDocumentStore(tmp_path / "sets").list() == [test_set]

    def test_latest_save_wins_and_no_temp_files_remain(self, tmp_path, test_set):
        docs = JsonFileDocumentStore(tmp_path)
        docs.save(test_set)
        renamed = operations.rename_test_set(test_set, "Renamed")
        docs.save(renamed)

        assert docs.load(test_set.uid).name == "Renamed"
        assert [p.name for p in tmp_path.iterdir()] == [f"{test_set.uid}.json"]

    def test_stored_document_uses_camel_case(self, tmp_path, test_set):
        docs = JsonFileDocumentStore(tmp_path)
        docs.save(test_set)

        data = json.loads((tmp_path / f"{test_set.uid}.json").read_text(encoding="utf-8"))
        assert data["associatedProjectUid"] == "proj-1"
        assert data["testCases"][0]["results"]["v1"]["executionTime"] == 42

    def test_corrupt_documents_are_skipped(self, tmp_path, test_set, caplog):
        docs = JsonFileDocumentStore(tmp_path)
        docs.save(test_set)
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        (tmp_path / "incomplete.json").write_text(json.dumps({"name": "no uid"}), encoding="utf-8")

        assert docs.list() == [test_set]
        assert "broken.json" in caplog.text

    def test_delete(self, tmp_path, test_set):
        docs = JsonFileDocumentStore(tmp_path)
        docs.save(test_set)
        assert docs.delete(test_set.uid)
        assert docs.load(test_set.uid) is None
        assert not docs.delete(test_set.uid)

    @pytest.mark.parametrize("uid", ["../escape", ".hidden", ""])
    def test_rejects_unsafe_uids(self, tmp_path, uid):
        with pytest.raises(ValidationError):
            JsonFileDocumentStore(tmp_path).load(uid)
