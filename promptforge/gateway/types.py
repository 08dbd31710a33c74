"""Core types and DTOs for the Model Invoker layer."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MessageRole(str, Enum):
    """Role tag of a chat message sent to the model."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class InvokerErrorKind(str, Enum):
    """Classification of a model invoker failure, produced at the adapter boundary."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"  # 401 / 403
    NOT_FOUND = "not_found"  # Unknown model or endpoint
    SERVER = "server"  # 5xx
    EMPTY_RESPONSE = "empty_response"
    OTHER = "other"


# 500 is deliberately absent: only gateway/proxy failures are treated as transient.
RETRYABLE_SERVER_STATUS_CODES = frozenset({502, 503, 504})


# ---------------------------------------------------------------------------
# Request DTOs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatMessage:
    """A single role-tagged message."""

    role: MessageRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class GenerationParams:
    """Generation parameters forwarded to the backend.

    Optional fields left as None are omitted from the request payload.
    """

    model: str
    temperature: float = 1.0
    max_tokens: int = 1024
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    reasoning_effort: str | None = None
    stream: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": self.stream,
        }
        if self.top_p is not None:
            payload["top_p"] = self.top_p
        if self.frequency_penalty is not None:
            payload["frequency_penalty"] = self.frequency_penalty
        if self.presence_penalty is not None:
            payload["presence_penalty"] = self.presence_penalty
        if self.reasoning_effort:
            payload["reasoning"] = {"effort": self.reasoning_effort}
        return payload


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ModelInvokerError(Exception):
    """Raised by a model invoker; carries a structured kind for retry decisions."""

    def __init__(self, kind: InvokerErrorKind, message: str, status_code: int = 0):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def is_retryable(self) -> bool:
        if self.kind in (InvokerErrorKind.NETWORK, InvokerErrorKind.TIMEOUT, InvokerErrorKind.RATE_LIMIT):
            return True
        if self.kind == InvokerErrorKind.SERVER:
            return self.status_code in RETRYABLE_SERVER_STATUS_CODES
        return False

    @classmethod
    def from_status(cls, status_code: int, message: str) -> ModelInvokerError:
        """Map an HTTP status code to an error kind."""
        if status_code == 429:
            kind = InvokerErrorKind.RATE_LIMIT
        elif status_code in (401, 403):
            kind = InvokerErrorKind.AUTH
        elif status_code == 404:
            kind = InvokerErrorKind.NOT_FOUND
        elif status_code == 408:
            kind = InvokerErrorKind.TIMEOUT
        elif status_code >= 500:
            kind = InvokerErrorKind.SERVER
        else:
            kind = InvokerErrorKind.OTHER
        return cls(kind, message, status_code=status_code)

    def __repr__(self) -> str:
        return f"ModelInvokerError(kind={self.kind.value!r}, status_code={self.status_code}, message={self.message!r})"
