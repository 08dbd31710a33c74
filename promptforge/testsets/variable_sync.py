"""Variable Synchronizer — reconcile a test set's columns with a template.

Template edits never touch existing test cases on their own. The caller
asks for a diff, shows the conflicts to the user, and only then calls
synchronize(), which applies the whole change at once.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum

from promptforge.core.exceptions import VariableSyncError
from promptforge.testsets.template import is_valid_variable_name
from promptforge.testsets.types import TestSet, utc_now_iso

logger = logging.getLogger(__name__)


class ConflictType(str, Enum):
    ADDITION = "addition"
    REMOVAL = "removal"


@dataclass(frozen=True)
class VariableConflict:
    type: ConflictType
    variable: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type.value, "variable": self.variable}


@dataclass(frozen=True)
class VariableDiff:
    additions: list[str] = field(default_factory=list)
    removals: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.additions or self.removals)

    @property
    def conflicts(self) -> list[VariableConflict]:
        """Removals first, then additions."""
        return [VariableConflict(ConflictType.REMOVAL, name) for name in self.removals] + [
            VariableConflict(ConflictType.ADDITION, name) for name in self.additions
        ]


@dataclass(frozen=True)
class VariableSyncResult:
    updated_test_set: TestSet
    conflicts: list[VariableConflict]


def _check_names(template_names: Sequence[str]) -> None:
    seen: set[str] = set()
    duplicates: list[str] = []
    invalid: list[str] = []
    for name in template_names:
        if not isinstance(name, str) or not is_valid_variable_name(name):
            invalid.append(repr(name))
            continue
        if name in seen and name not in duplicates:
            duplicates.append(name)
        seen.add(name)

    if invalid:
        raise VariableSyncError(f"Invalid variable names: {', '.join(invalid)}")
    if duplicates:
        raise VariableSyncError(f"Duplicate variable names: {', '.join(duplicates)}")


def diff(test_set: TestSet, template_names: Sequence[str]) -> VariableDiff:
    """Names the template adds and the names it no longer uses, in declaration order."""
    current = set(test_set.variable_names)
    wanted = set(template_names)
    additions: list[str] = []
    for name in template_names:
        if name not in current and name not in additions:
            additions.append(name)
    removals = [name for name in test_set.variable_names if name not in wanted]
    return VariableDiff(additions=additions, removals=removals)


def synchronize(test_set: TestSet, template_names: Sequence[str]) -> VariableSyncResult:
    """Make variable_names exactly template_names and re-key every case.

    Retained values are preserved, removed ones dropped, added ones start
    as an empty string.
    """
    _check_names(template_names)
    changes = diff(test_set, template_names)
    names = list(template_names)

    cases = [
        replace(case, variable_values={name: case.variable_values.get(name, "") for name in names})
        for case in test_set.test_cases
    ]
    updated = replace(test_set, variable_names=names, test_cases=cases, updated_at=utc_now_iso())

    if changes.has_changes:
        logger.info(
            "Synchronized variables for test set %s: +%s -%s",
            test_set.uid,
            changes.additions,
            changes.removals,
        )
    return VariableSyncResult(updated_test_set=updated, conflicts=changes.conflicts)


def validate(test_set: TestSet, template_names: Sequence[str], *, require_aligned: bool = False) -> VariableDiff:
    """Check template_names against the test set without mutating anything.

    Raises VariableSyncError for duplicate or invalid names, and, with
    require_aligned, when the test set's columns differ from the template.
    """
    _check_names(template_names)
    changes = diff(test_set, template_names)
    if require_aligned and changes.has_changes:
        parts = []
        if changes.additions:
            parts.append(f"missing columns: {', '.join(changes.additions)}")
        if changes.removals:
            parts.append(f"unused columns: {', '.join(changes.removals)}")
        raise VariableSyncError(f"Test set variables are out of sync with the template ({'; '.join(parts)})")
    return changes
