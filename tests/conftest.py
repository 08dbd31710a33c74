from collections.abc import AsyncGenerator, Callable
from dataclasses import replace

import pytest
from httpx import ASGITransport, AsyncClient

from promptforge.core.config import settings

# Override settings for tests
settings.app_env = "test"
settings.retry_base_delay = 0.0
settings.window_delay = 0.0
settings.rate_limit_enabled = False
settings.openrouter_api_key = ""

from promptforge.gateway.invoker import BaseModelInvoker  # noqa: E402
from promptforge.gateway.types import ChatMessage, GenerationParams, MessageRole  # noqa: E402
from promptforge.main import app  # noqa: E402
from promptforge.testsets import operations  # noqa: E402
from promptforge.testsets.document_store import InMemoryDocumentStore  # noqa: E402
from promptforge.testsets.result_store import ResultStore  # noqa: E402
from promptforge.testsets.service import TestSetService  # noqa: E402
from promptforge.testsets.types import ModelConfig, PromptTemplate, TestSet, Version  # noqa: E402


class FakeInvoker(BaseModelInvoker):
    """Scripted model invoker.

    `responses` is consumed one item per call: a string is returned, an
    exception is raised. When it runs dry, `default` is returned. A
    `responder(messages)` callable, if given, takes precedence.
    """

    name = "fake"

    def __init__(
        self,
        responses: list | None = None,
        default: str = "ok",
        api_key: str = "test-key",
        responder: Callable[[list[ChatMessage]], str] | None = None,
    ):
        super().__init__(api_key=api_key)
        self.responses = list(responses or [])
        self.default = default
        self.responder = responder
        self.calls: list[tuple[list[ChatMessage], GenerationParams]] = []

    async def invoke(self, messages, params):
        self.calls.append((list(messages), params))
        if self.responder is not None:
            return self.responder(list(messages))
        if self.responses:
            item = self.responses.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return self.default


@pytest.fixture
def invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
def make_invoker() -> type[FakeInvoker]:
    return FakeInvoker


@pytest.fixture
def store() -> ResultStore:
    return ResultStore(InMemoryDocumentStore())


@pytest.fixture
def version() -> Version:
    return Version(
        id=3,
        prompts=[
            PromptTemplate(role=MessageRole.SYSTEM, content="You are {{persona}}."),
            PromptTemplate(role=MessageRole.USER, content="Say hello to {{name}}."),
        ],
        model_config=ModelConfig(model="openai/gpt-4o-mini"),
    )


@pytest.fixture
def make_test_set(store: ResultStore) -> Callable:
    """Build and save a test set with `cases` cases bound to persona/name."""

    async def _make(cases: int = 1, name: str = "Greetings", project_uid: str = "proj-1") -> TestSet:
        test_set = operations.create_test_set(name, project_uid)
        test_set = replace(test_set, variable_names=["persona", "name"])
        for i in range(cases):
            test_set = operations.add_test_case(test_set)
            case_id = test_set.test_cases[-1].id
            test_set = operations.update_test_case(test_set, case_id, {"persona": "a pirate", "name": f"user{i}"})
        await store.save(test_set)
        return test_set

    return _make


@pytest.fixture
def service(store: ResultStore, invoker: FakeInvoker) -> TestSetService:
    return TestSetService(store, invoker)


@pytest.fixture
async def client(service: TestSetService) -> AsyncGenerator[AsyncClient, None]:
    app.state.service = service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await service.wait_for_background_tasks()
    del app.state.service
