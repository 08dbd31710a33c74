"""Domain exceptions shared by the engine, the service layer and the API."""


class PromptForgeError(Exception):
    """Base class for all application errors."""

    status_code: int = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class NotFoundError(PromptForgeError):
    """A test set, test case or version does not exist."""

    status_code = 404


class ValidationError(PromptForgeError):
    """Caller-supplied data is malformed."""

    status_code = 422


class VariableSyncError(ValidationError):
    """Template variables cannot be reconciled with a test set's columns."""


class ConfigurationError(PromptForgeError):
    """Missing prompts, model configuration or API credential.

    Never retried: the same call would fail the same way.
    """

    status_code = 409


class BatchAlreadyRunningError(PromptForgeError):
    """A batch is already executing for this test set."""

    status_code = 409


class CaseAlreadyRunningError(PromptForgeError):
    """The same test case is already executing against this version."""

    status_code = 409
