"""Core entities of the Test-Set Execution Engine.

Persisted records use the camelCase keys of the workbench's document format,
so to_dict()/from_dict() are the only place where naming is translated.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from promptforge.gateway.types import MessageRole


def generate_uid() -> str:
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ResultStatus(str, Enum):
    """Lifecycle of one (test case, version) result slot."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ResultStatus.COMPLETED, ResultStatus.ERROR)


class Selection(str, Enum):
    """Which cases a batch run picks up."""

    PENDING = "pending"  # No result yet, or the last run errored
    ALL = "all"  # Forced re-run of every case


# ---------------------------------------------------------------------------
# Test set entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Variable:
    name: str
    value: str = ""


@dataclass(frozen=True)
class Message:
    """A conversation turn appended after the rendered prompts."""

    role: MessageRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(role=MessageRole(data["role"]), content=str(data.get("content", "")))


@dataclass(frozen=True)
class TestResult:
    """Outcome of running one test case against one version."""

    __test__ = False  # not a pytest test class

    id: str = field(default_factory=generate_uid)
    content: str = ""
    status: ResultStatus = ResultStatus.PENDING
    error: str | None = None
    execution_time: int | None = None  # milliseconds
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.execution_time is not None:
            data["executionTime"] = self.execution_time
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestResult:
        return cls(
            id=data.get("id") or generate_uid(),
            content=data.get("content", ""),
            status=ResultStatus(data.get("status", ResultStatus.PENDING.value)),
            error=data.get("error"),
            execution_time=data.get("executionTime"),
            timestamp=data.get("timestamp") or utc_now_iso(),
        )


@dataclass(frozen=True)
class TestCase:
    """One row of the grid: variable bindings plus an optional conversation tail."""

    __test__ = False

    id: str = field(default_factory=generate_uid)
    variable_values: dict[str, str] = field(default_factory=dict)
    messages: list[Message] = field(default_factory=list)
    results: dict[str, TestResult] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "variableValues": dict(self.variable_values),
            "messages": [m.to_dict() for m in self.messages],
            "results": {k: r.to_dict() for k, r in self.results.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestCase:
        return cls(
            id=data["id"],
            variable_values={k: str(v) for k, v in (data.get("variableValues") or {}).items()},
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            results={k: TestResult.from_dict(r) for k, r in (data.get("results") or {}).items()},
        )


@dataclass(frozen=True)
class TestSetUIState:
    selected_comparison_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.selected_comparison_version is None:
            return {}
        return {"selectedComparisonVersion": self.selected_comparison_version}


@dataclass(frozen=True)
class TestSet:
    """A named grid of test cases associated with one project."""

    __test__ = False

    uid: str
    name: str
    associated_project_uid: str
    variable_names: list[str] = field(default_factory=list)
    test_cases: list[TestCase] = field(default_factory=list)
    ui_state: TestSetUIState = field(default_factory=TestSetUIState)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def get_case(self, case_id: str) -> TestCase | None:
        for case in self.test_cases:
            if case.id == case_id:
                return case
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "name": self.name,
            "associatedProjectUid": self.associated_project_uid,
            "variableNames": list(self.variable_names),
            "testCases": [c.to_dict() for c in self.test_cases],
            "uiState": self.ui_state.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestSet:
        """Build a TestSet from a stored record.

        Records written before uiState/messages existed load with defaults.
        """
        ui_state = data.get("uiState") or {}
        now = utc_now_iso()
        return cls(
            uid=data["uid"],
            name=data["name"],
            associated_project_uid=data["associatedProjectUid"],
            variable_names=list(data.get("variableNames") or []),
            test_cases=[TestCase.from_dict(c) for c in data.get("testCases") or []],
            ui_state=TestSetUIState(selected_comparison_version=ui_state.get("selectedComparisonVersion")),
            created_at=data.get("createdAt") or now,
            updated_at=data.get("updatedAt") or now,
        )


# ---------------------------------------------------------------------------
# Version — read-only input owned by the project
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PromptTemplate:
    role: MessageRole
    content: str


@dataclass(frozen=True)
class ModelConfig:
    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    reasoning_effort: str | None = None


@dataclass(frozen=True)
class Version:
    """Immutable snapshot of a project's prompts and model configuration."""

    id: int
    prompts: list[PromptTemplate] = field(default_factory=list)
    model_config: ModelConfig | None = None

    @property
    def default_identifier(self) -> str:
        return f"v{self.id}"
