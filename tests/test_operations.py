"""Tests for pure TestSet mutations and (de)serialization."""

from dataclasses import replace

import pytest

from promptforge.core.exceptions import NotFoundError, ValidationError
from promptforge.gateway.types import MessageRole
from promptforge.testsets import operations
from promptforge.testsets.types import Message, ResultStatus, TestSet


@pytest.fixture
def test_set() -> TestSet:
    ts = replace(operations.create_test_set("  Greetings  ", "proj-1"), variable_names=["name"])
    ts = operations.add_test_case(ts)
    return replace(ts, updated_at="2000-01-01T00:00:00+00:00")


class TestCreate:
    def test_create_test_set(self):
        ts = operations.create_test_set("  Greetings  ", "proj-1")
        assert ts.name == "Greetings"
        assert ts.associated_project_uid == "proj-1"
        assert ts.test_cases == []
        assert ts.created_at == ts.updated_at

    @pytest.mark.parametrize("name,project", [("", "p"), ("   ", "p"), ("ok", "")])
    def test_create_test_set_rejects_bad_input(self, name, project):
        with pytest.raises(ValidationError):
            operations.create_test_set(name, project)

    def test_create_test_case_binds_every_variable_to_empty(self):
        case = operations.create_test_case(["a", "b"])
        assert case.variable_values == {"a": "", "b": ""}
        assert case.results == {}


class TestCaseOperations:
    def test_add_test_case_refreshes_updated_at(self, test_set):
        updated = operations.add_test_case(test_set)
        assert len(updated.test_cases) == 2
        assert updated.test_cases[1].variable_values == {"name": ""}
        assert updated.updated_at != test_set.updated_at
        assert len(test_set.test_cases) == 1

    def test_import_keeps_values_and_messages(self, test_set):
        updated = operations.add_test_cases_from_import(
            test_set,
            [
                {"variableValues": {"name": "Ann", "extra": 5}},
                {"variableValues": {"name": "Bob"}, "messages": [{"role": "assistant", "content": "Hi"}]},
            ],
        )
        imported = updated.test_cases[1:]
        assert imported[0].variable_values == {"name": "Ann", "extra": "5"}
        assert imported[1].messages == [Message(role=MessageRole.ASSISTANT, content="Hi")]

    def test_import_rejects_system_messages(self, test_set):
        with pytest.raises(ValidationError, match="role"):
            operations.add_test_cases_from_import(test_set, [{"messages": [{"role": "system", "content": "x"}]}])

    def test_duplicate_copies_values_and_messages_but_not_results(self, test_set):
        case_id = test_set.test_cases[0].id
        ts = operations.update_test_case(test_set, case_id, {"name": "Ann"})
        ts = operations.update_test_case_messages(ts, case_id, [{"role": "user", "content": "More"}])
        ts = operations.update_test_result(ts, case_id, "v1", operations.create_test_result("done"))

        duplicated = operations.duplicate_test_case(ts, case_id)

        copy = duplicated.test_cases[-1]
        assert copy.id != case_id
        assert copy.variable_values == {"name": "Ann"}
        assert copy.messages == [Message(role=MessageRole.USER, content="More")]
        assert copy.results == {}

    def test_unknown_case_raises_not_found(self, test_set):
        with pytest.raises(NotFoundError):
            operations.update_test_case(test_set, "missing", {"name": "x"})
        with pytest.raises(NotFoundError):
            operations.delete_test_case(test_set, "missing")

    def test_delete_test_case(self, test_set):
        updated = operations.delete_test_case(test_set, test_set.test_cases[0].id)
        assert updated.test_cases == []

    def test_bulk_delete(self, test_set):
        ts = operations.add_test_case(operations.add_test_case(test_set))
        ids = [c.id for c in ts.test_cases]

        updated = operations.bulk_delete_test_cases(ts, [ids[0], ids[2], "unknown"])

        assert [c.id for c in updated.test_cases] == [ids[1]]

    def test_bulk_delete_validation(self, test_set):
        with pytest.raises(ValidationError):
            operations.bulk_delete_test_cases(test_set, [])
        with pytest.raises(NotFoundError):
            operations.bulk_delete_test_cases(test_set, ["unknown"])


class TestResultOperations:
    def test_update_result_overwrites_slot(self, test_set):
        case_id = test_set.test_cases[0].id
        ts = operations.update_test_result(test_set, case_id, "v1", operations.create_test_result())
        ts = operations.update_test_result(
            ts, case_id, "v1", operations.create_test_result("out", ResultStatus.COMPLETED, execution_time=12)
        )

        results = ts.test_cases[0].results
        assert list(results) == ["v1"]
        assert results["v1"].status == ResultStatus.COMPLETED
        assert results["v1"].execution_time == 12

    def test_clear_result(self, test_set):
        case_id = test_set.test_cases[0].id
        ts = operations.update_test_result(test_set, case_id, "v1", operations.create_test_result())
        ts = operations.update_test_result(ts, case_id, "v2", operations.create_test_result())

        cleared = operations.clear_test_result(ts, case_id, "v1")

        assert list(cleared.test_cases[0].results) == ["v2"]

    def test_update_ui_state(self, test_set):
        updated = operations.update_ui_state(test_set, "v2")
        assert updated.ui_state.selected_comparison_version == "v2"


class TestNames:
    def test_name_exists_is_case_insensitive_and_project_scoped(self, test_set):
        assert operations.test_set_name_exists("greetings", "proj-1", [test_set])
        assert not operations.test_set_name_exists("greetings", "proj-2", [test_set])
        assert not operations.test_set_name_exists("greetings", "proj-1", [test_set], exclude_uid=test_set.uid)

    def test_generate_unique_name(self, test_set):
        taken = operations.create_test_set("Greetings 1", "proj-1")
        assert operations.generate_unique_test_set_name("Greetings", "proj-1", [test_set, taken]) == "Greetings 2"
        assert operations.generate_unique_test_set_name("Fresh", "proj-1", [test_set]) == "Fresh"


class TestValidation:
    def test_valid_test_set(self, test_set):
        operations.validate_test_set(test_set)

    def test_duplicate_variable_names(self, test_set):
        with pytest.raises(ValidationError, match="more than once"):
            operations.validate_test_set(replace(test_set, variable_names=["a", "a"]))

    def test_invalid_variable_name(self, test_set):
        with pytest.raises(ValidationError):
            operations.validate_test_set(replace(test_set, variable_names=["bad name"]))


class TestSerialization:
    def test_round_trip_uses_camel_case(self, test_set):
        case_id = test_set.test_cases[0].id
        ts = operations.update_test_result(
            test_set, case_id, "v1", operations.create_test_result("out", ResultStatus.COMPLETED, execution_time=5)
        )

        data = ts.to_dict()
        assert data["associatedProjectUid"] == "proj-1"
        assert data["testCases"][0]["results"]["v1"]["executionTime"] == 5
        assert TestSet.from_dict(data) == ts

    def test_legacy_record_without_ui_state_or_messages(self):
        legacy = {
            "uid": "ts-1",
            "name": "Old",
            "associatedProjectUid": "p",
            "variableNames": ["a"],
            "testCases": [{"id": "c1", "variableValues": {"a": "1"}, "results": {}}],
        }
        ts = TestSet.from_dict(legacy)
        assert ts.ui_state.selected_comparison_version is None
        assert ts.test_cases[0].messages == []
