"""Pure mutation operations on TestSet values.

Every function returns a new TestSet (with a fresh updated_at) and leaves
its input untouched. Persisting the result is the caller's job.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from typing import Any

from promptforge.core.exceptions import NotFoundError, ValidationError
from promptforge.gateway.types import MessageRole
from promptforge.testsets.template import is_valid_variable_name
from promptforge.testsets.types import (
    Message,
    ResultStatus,
    TestCase,
    TestResult,
    TestSet,
    TestSetUIState,
    generate_uid,
    utc_now_iso,
)

_CASE_MESSAGE_ROLES = (MessageRole.USER, MessageRole.ASSISTANT)


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def create_test_set(name: str, associated_project_uid: str) -> TestSet:
    if not name or not isinstance(name, str) or not name.strip():
        raise ValidationError("Test set name is required and must be a non-empty string")
    if not associated_project_uid or not isinstance(associated_project_uid, str):
        raise ValidationError("Associated project UID is required and must be a string")

    now = utc_now_iso()
    return TestSet(
        uid=generate_uid(),
        name=name.strip(),
        associated_project_uid=associated_project_uid,
        created_at=now,
        updated_at=now,
    )


def create_test_case(variable_names: Iterable[str] = ()) -> TestCase:
    """New case with every declared variable bound to an empty string."""
    return TestCase(variable_values={name: "" for name in variable_names if name and isinstance(name, str)})


def create_test_result(
    content: str = "",
    status: ResultStatus = ResultStatus.PENDING,
    error: str | None = None,
    execution_time: int | None = None,
) -> TestResult:
    return TestResult(content=content, status=status, error=error, execution_time=execution_time)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_test_set(test_set: TestSet) -> None:
    """Raise ValidationError if the test set breaks a structural invariant."""
    if not isinstance(test_set, TestSet):
        raise ValidationError("Test set must be a TestSet")
    if not test_set.uid:
        raise ValidationError("Test set must have a valid uid")
    if not test_set.name:
        raise ValidationError("Test set must have a valid name")
    if not test_set.associated_project_uid:
        raise ValidationError("Test set must have a valid associatedProjectUid")

    seen: set[str] = set()
    for index, name in enumerate(test_set.variable_names):
        if not is_valid_variable_name(name):
            raise ValidationError(f"Variable name {name!r} at index {index} is not a valid identifier")
        if name in seen:
            raise ValidationError(f"Variable name {name!r} is declared more than once")
        seen.add(name)

    case_ids: set[str] = set()
    for index, case in enumerate(test_set.test_cases):
        if not case.id:
            raise ValidationError(f"Test case at index {index} must have a valid id")
        if case.id in case_ids:
            raise ValidationError(f"Duplicate test case id {case.id!r}")
        case_ids.add(case.id)


def _parse_messages(messages: Sequence[Any]) -> list[Message]:
    """Accept Message objects or {"role", "content"} dicts; only user/assistant turns."""
    parsed: list[Message] = []
    for index, msg in enumerate(messages):
        if isinstance(msg, Message):
            role, content = msg.role, msg.content
        elif isinstance(msg, Mapping):
            if "role" not in msg or "content" not in msg:
                raise ValidationError(f"Message at index {index} must have 'role' and 'content' properties")
            try:
                role = MessageRole(msg["role"])
            except ValueError:
                raise ValidationError(f"Message at index {index} must have role 'user' or 'assistant'") from None
            content = msg["content"]
        else:
            raise ValidationError(f"Message at index {index} must be an object")

        if role not in _CASE_MESSAGE_ROLES:
            raise ValidationError(f"Message at index {index} must have role 'user' or 'assistant'")
        if not isinstance(content, str):
            raise ValidationError(f"Message at index {index} must have content as a string")
        parsed.append(Message(role=role, content=content))
    return parsed


def _case_index(test_set: TestSet, case_id: str) -> int:
    if not case_id or not isinstance(case_id, str):
        raise ValidationError("Test case ID is required and must be a string")
    for index, case in enumerate(test_set.test_cases):
        if case.id == case_id:
            return index
    raise NotFoundError(f"Test case not found: {case_id}")


def _with_cases(test_set: TestSet, test_cases: list[TestCase]) -> TestSet:
    return replace(test_set, test_cases=test_cases, updated_at=utc_now_iso())


def _replace_case(test_set: TestSet, index: int, case: TestCase) -> TestSet:
    cases = list(test_set.test_cases)
    cases[index] = case
    return _with_cases(test_set, cases)


# ---------------------------------------------------------------------------
# Test case operations
# ---------------------------------------------------------------------------


def add_test_case(test_set: TestSet) -> TestSet:
    return _with_cases(test_set, [*test_set.test_cases, create_test_case(test_set.variable_names)])


def add_test_cases_from_import(test_set: TestSet, cases_data: Sequence[Mapping[str, Any]]) -> TestSet:
    """Append cases built from already-parsed import records.

    Each record may carry "variableValues" (values coerced to str) and
    "messages"; keys outside the declared variables are kept as-is.
    """
    if not isinstance(cases_data, Sequence) or isinstance(cases_data, (str, bytes)):
        raise ValidationError("Test cases data must be an array")

    new_cases: list[TestCase] = []
    for data in cases_data:
        if not isinstance(data, Mapping):
            raise ValidationError("Test case data must be an object")
        raw_values = data.get("variableValues") or {}
        if not isinstance(raw_values, Mapping):
            raise ValidationError("Variable values must be an object")
        values = {str(k): "" if v is None else str(v) for k, v in raw_values.items()}
        new_cases.append(TestCase(variable_values=values, messages=_parse_messages(data.get("messages") or [])))

    return _with_cases(test_set, [*test_set.test_cases, *new_cases])


def duplicate_test_case(test_set: TestSet, case_id: str) -> TestSet:
    """Append a copy of the case's values and messages; results are not copied."""
    original = test_set.test_cases[_case_index(test_set, case_id)]
    duplicate = TestCase(variable_values=dict(original.variable_values), messages=list(original.messages))
    return _with_cases(test_set, [*test_set.test_cases, duplicate])


def update_test_case(test_set: TestSet, case_id: str, variable_values: Mapping[str, str]) -> TestSet:
    if not isinstance(variable_values, Mapping):
        raise ValidationError("Variable values must be an object")
    index = _case_index(test_set, case_id)
    case = replace(test_set.test_cases[index], variable_values={str(k): str(v) for k, v in variable_values.items()})
    return _replace_case(test_set, index, case)


def update_test_case_messages(test_set: TestSet, case_id: str, messages: Sequence[Any]) -> TestSet:
    if not isinstance(messages, Sequence) or isinstance(messages, (str, bytes)):
        raise ValidationError("Messages must be an array")
    parsed = _parse_messages(messages)
    index = _case_index(test_set, case_id)
    return _replace_case(test_set, index, replace(test_set.test_cases[index], messages=parsed))


def delete_test_case(test_set: TestSet, case_id: str) -> TestSet:
    index = _case_index(test_set, case_id)
    cases = list(test_set.test_cases)
    del cases[index]
    return _with_cases(test_set, cases)


def bulk_delete_test_cases(test_set: TestSet, case_ids: Sequence[str]) -> TestSet:
    if not isinstance(case_ids, Sequence) or isinstance(case_ids, (str, bytes)):
        raise ValidationError("Test case IDs must be an array")
    if not case_ids:
        raise ValidationError("At least one test case ID is required")
    for index, case_id in enumerate(case_ids):
        if not case_id or not isinstance(case_id, str):
            raise ValidationError(f"Test case ID at index {index} must be a non-empty string")

    to_delete = set(case_ids)
    remaining = [c for c in test_set.test_cases if c.id not in to_delete]
    if len(remaining) == len(test_set.test_cases):
        raise NotFoundError("No matching test cases found to delete")
    return _with_cases(test_set, remaining)


# ---------------------------------------------------------------------------
# Result operations
# ---------------------------------------------------------------------------


def update_test_result(test_set: TestSet, case_id: str, version_identifier: str, result: TestResult) -> TestSet:
    """Replace the (case, version) result slot."""
    if not version_identifier or not isinstance(version_identifier, str):
        raise ValidationError("Version identifier is required and must be a string")
    if not isinstance(result, TestResult):
        raise ValidationError("Test result is required and must be a TestResult")

    index = _case_index(test_set, case_id)
    case = test_set.test_cases[index]
    return _replace_case(test_set, index, replace(case, results={**case.results, version_identifier: result}))


def clear_test_result(test_set: TestSet, case_id: str, version_identifier: str) -> TestSet:
    if not version_identifier or not isinstance(version_identifier, str):
        raise ValidationError("Version identifier is required and must be a string")

    index = _case_index(test_set, case_id)
    case = test_set.test_cases[index]
    results = {k: v for k, v in case.results.items() if k != version_identifier}
    return _replace_case(test_set, index, replace(case, results=results))


# ---------------------------------------------------------------------------
# Test set level
# ---------------------------------------------------------------------------


def update_ui_state(test_set: TestSet, selected_comparison_version: str | None) -> TestSet:
    return replace(
        test_set,
        ui_state=TestSetUIState(selected_comparison_version=selected_comparison_version),
        updated_at=utc_now_iso(),
    )


def rename_test_set(test_set: TestSet, name: str) -> TestSet:
    if not name or not isinstance(name, str) or not name.strip():
        raise ValidationError("Test set name is required and must be a non-empty string")
    return replace(test_set, name=name.strip(), updated_at=utc_now_iso())


def test_set_name_exists(
    name: str,
    project_uid: str,
    test_sets: Iterable[TestSet],
    exclude_uid: str | None = None,
) -> bool:
    """Case-insensitive name check within one project."""
    if not name or not project_uid:
        return False
    lowered = name.lower()
    return any(
        ts.associated_project_uid == project_uid and ts.name.lower() == lowered and ts.uid != exclude_uid
        for ts in test_sets
    )


def generate_unique_test_set_name(base_name: str, project_uid: str, test_sets: Iterable[TestSet]) -> str:
    """Return base_name, or "base_name N" with the first free counter."""
    base_name = base_name.strip() if base_name and isinstance(base_name, str) else ""
    base_name = base_name or "Test Set"
    if not project_uid:
        return base_name

    existing = list(test_sets)
    candidate = base_name
    counter = 1
    while test_set_name_exists(candidate, project_uid, existing):
        candidate = f"{base_name} {counter}"
        counter += 1
    return candidate
