"""Single-Test Executor — run one test case against one version.

Flow for a run:
  1. First attempt: write a pending result, then a running result
  2. Check preconditions (prompts, model config, API credential)
  3. Render the version's prompts with the case's variables, append the
     case's message tail
  4. Invoke the model (streaming only if an on_token callback is set)
  5. Write a completed result, or retry transient failures with linear
     backoff and finally write an error result

run() never raises for execution failures: every path ends in a write.
A write that finds its case or test set deleted is logged and skipped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Sequence

from promptforge.core.config import settings
from promptforge.core.exceptions import ConfigurationError, NotFoundError
from promptforge.core.metrics import TEST_DURATION, TEST_RETRIES, TEST_RUNS
from promptforge.gateway.invoker import BaseModelInvoker
from promptforge.gateway.types import (
    ChatMessage,
    GenerationParams,
    InvokerErrorKind,
    ModelInvokerError,
)
from promptforge.testsets.operations import create_test_result
from promptforge.testsets.result_store import ResultStore
from promptforge.testsets.template import render
from promptforge.testsets.types import ResultStatus, TestCase, TestResult, TestSet, Version

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str, str, str], Awaitable[None] | None]

_ERROR_MESSAGES: dict[InvokerErrorKind, str] = {
    InvokerErrorKind.RATE_LIMIT: "Rate limit exceeded. Please wait before retrying or reduce concurrent requests.",
    InvokerErrorKind.NOT_FOUND: "Model not found. Please check your model configuration.",
    InvokerErrorKind.SERVER: "Server error. This is usually temporary, please try again.",
    InvokerErrorKind.NETWORK: "Network error. Please check your internet connection and try again.",
    InvokerErrorKind.TIMEOUT: "Request timed out. The model may be taking too long to respond.",
}


def describe_error(error: ModelInvokerError) -> str:
    """User-facing text for an invoker failure."""
    if error.kind == InvokerErrorKind.AUTH:
        if error.status_code == 403:
            return "Access forbidden. Please verify your API key permissions."
        return "Authentication failed. Please check your API key configuration."
    return _ERROR_MESSAGES.get(error.kind, error.message)


def check_preconditions(version: Version, invoker: BaseModelInvoker) -> None:
    """Raise ConfigurationError if the version cannot be executed at all."""
    if not version.prompts:
        raise ConfigurationError("No prompts found in version. Please add prompts to test.")
    if version.model_config is None or not version.model_config.model:
        raise ConfigurationError("No model configuration found in version. Please configure a model.")
    if not invoker.has_credential():
        raise ConfigurationError("OpenRouter API key not found. Please configure your API key in settings.")


def build_messages(case: TestCase, version: Version) -> list[ChatMessage]:
    """Rendered prompts followed by the case's own conversation tail."""
    messages = [ChatMessage(role=p.role, content=render(p.content, case.variable_values)) for p in version.prompts]
    messages.extend(ChatMessage(role=m.role, content=m.content) for m in case.messages)
    return messages


def build_params(version: Version) -> GenerationParams:
    config = version.model_config
    if config is None:
        raise ConfigurationError("No model configuration found in version. Please configure a model.")
    return GenerationParams(
        model=config.model,
        temperature=config.temperature if config.temperature is not None else settings.default_temperature,
        max_tokens=config.max_tokens or settings.default_max_tokens,
        top_p=config.top_p,
        frequency_penalty=config.frequency_penalty,
        presence_penalty=config.presence_penalty,
        reasoning_effort=config.reasoning_effort,
    )


class TestExecutor:
    """Runs single test cases and records their results.

    Usage:
        executor = TestExecutor(store, OpenRouterInvoker(api_key=...))
        result = await executor.run(test_set, case_id, version, "v3")
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        store: ResultStore,
        invoker: BaseModelInvoker,
        *,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        on_token: TokenCallback | None = None,
    ):
        self.store = store
        self.invoker = invoker
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.retry_base_delay = settings.retry_base_delay if retry_base_delay is None else retry_base_delay
        self.on_token = on_token

    def check_preconditions(self, version: Version) -> None:
        check_preconditions(version, self.invoker)

    async def run(
        self,
        test_set: TestSet,
        case_id: str,
        version: Version,
        version_identifier: str | None = None,
        attempt: int = 0,
    ) -> TestResult:
        """Execute one case and return the terminal result that was written."""
        identifier = version_identifier or version.default_identifier
        case = test_set.get_case(case_id)
        if case is None:
            logger.error("Test case %s not found in test set %s", case_id, test_set.uid)
            return create_test_result(status=ResultStatus.ERROR, error="Test case not found")

        if attempt == 0:
            pending = create_test_result(status=ResultStatus.PENDING)
            if not await self._write(test_set.uid, case_id, identifier, pending):
                return create_test_result(status=ResultStatus.ERROR, error="Test case not found")
            await self._write(test_set.uid, case_id, identifier, create_test_result(status=ResultStatus.RUNNING))

        start = time.monotonic()
        try:
            self.check_preconditions(version)
            messages = build_messages(case, version)
            params = build_params(version)

            logger.info(
                "Executing test case %s (attempt %d/%d)",
                case_id,
                attempt + 1,
                self.max_retries + 1,
                extra={"test_set_uid": test_set.uid, "case_id": case_id},
            )
            content = await self._invoke(messages, params, test_set.uid, case_id)
            if not content or not content.strip():
                raise ModelInvokerError(InvokerErrorKind.EMPTY_RESPONSE, "Empty or invalid response from model")

        except ConfigurationError as e:
            return await self._fail(test_set, case_id, identifier, e.message, start, attempt)

        except ModelInvokerError as e:
            logger.warning(
                "Test case %s failed (attempt %d): %r",
                case_id,
                attempt + 1,
                e,
                extra={"test_set_uid": test_set.uid, "case_id": case_id},
            )
            if e.is_retryable and attempt < self.max_retries:
                delay = (attempt + 1) * self.retry_base_delay
                TEST_RETRIES.labels(kind=e.kind.value).inc()
                logger.info("Retrying test case %s in %.1fs", case_id, delay)
                await asyncio.sleep(delay)
                return await self.run(test_set, case_id, version, identifier, attempt + 1)
            return await self._fail(test_set, case_id, identifier, describe_error(e), start, attempt)

        except Exception as e:
            logger.exception("Unexpected error executing test case %s", case_id)
            return await self._fail(test_set, case_id, identifier, str(e) or type(e).__name__, start, attempt)

        elapsed = time.monotonic() - start
        result = create_test_result(content=content, status=ResultStatus.COMPLETED, execution_time=int(elapsed * 1000))
        await self._write(test_set.uid, case_id, identifier, result)
        TEST_RUNS.labels(status=ResultStatus.COMPLETED.value).inc()
        TEST_DURATION.observe(elapsed)
        logger.info("Test case %s completed in %dms", case_id, result.execution_time)
        return result

    async def _invoke(self, messages: Sequence[ChatMessage], params: GenerationParams, uid: str, case_id: str) -> str:
        if self.on_token is None:
            return await self.invoker.invoke(messages, params)

        chunks: list[str] = []
        async for chunk in self.invoker.stream(messages, params):
            chunks.append(chunk)
            outcome = self.on_token(uid, case_id, chunk)
            if inspect.isawaitable(outcome):
                await outcome
        return "".join(chunks)

    async def _fail(
        self,
        test_set: TestSet,
        case_id: str,
        identifier: str,
        message: str,
        start: float,
        attempt: int,
    ) -> TestResult:
        if attempt > 0:
            message = f"{message} (failed after {attempt + 1} attempts)"
        result = create_test_result(
            status=ResultStatus.ERROR,
            error=message,
            execution_time=int((time.monotonic() - start) * 1000),
        )
        await self._write(test_set.uid, case_id, identifier, result)
        TEST_RUNS.labels(status=ResultStatus.ERROR.value).inc()
        logger.error(
            "Test case %s failed permanently: %s",
            case_id,
            message,
            extra={"test_set_uid": test_set.uid, "case_id": case_id},
        )
        return result

    async def _write(self, uid: str, case_id: str, identifier: str, result: TestResult) -> bool:
        """Persist a result. Returns False if the case or test set was deleted meanwhile."""
        try:
            await self.store.write(uid, case_id, identifier, result)
        except NotFoundError as e:
            logger.warning(
                "Dropping %s result for test case %s: %s",
                result.status.value,
                case_id,
                e.message,
                extra={"test_set_uid": uid, "case_id": case_id},
            )
            return False
        return True
