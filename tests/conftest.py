import threading
import time
from typing import Callable, Iterator

import pytest

from buildcrew.config_loader import MemoryConfig, RouterConfig
from buildcrew.memory import MemoryManager
from buildcrew.models import ModelConfig, ModelRequest, ModelResponse, TokenUsage
from buildcrew.router import ModelRouter
from buildcrew.tooling import ToolRegistry

GARBAGE = "I am not JSON, sorry."


class FakeBackend:
    """
    Scripted model backend.

    `responder(request) -> str` decides the reply. Without one every call
    gets GARBAGE, which pushes agents down their fallback paths.
    """

    def __init__(self, responder: Callable[[ModelRequest], str] | None = None,
                 delay: float = 0.0, failures: int = 0, tokens: int = 10):
        self.responder = responder
        self.delay = delay
        self.failures = failures
        self.tokens = tokens
        self.calls: list[tuple[str, ModelRequest]] = []
        self._lock = threading.Lock()

    def complete(self, model: ModelConfig, request: ModelRequest) -> ModelResponse:
        with self._lock:
            self.calls.append((model.name, request))
            fail = self.failures > 0
            if fail:
                self.failures -= 1
        if self.delay:
            time.sleep(self.delay)
        if fail:
            raise ConnectionError("backend unavailable")
        content = self.responder(request) if self.responder else GARBAGE
        return ModelResponse(
            content=content,
            usage=TokenUsage(prompt_tokens=self.tokens - 2, completion_tokens=2, total_tokens=self.tokens),
            model=model.name,
        )

    def stream(self, model: ModelConfig, request: ModelRequest) -> Iterator[str]:
        content = self.responder(request) if self.responder else GARBAGE
        for word in content.split(" "):
            yield word


def prompt_of(request: ModelRequest) -> str:
    return request.messages[-1]["content"]


def system_of(request: ModelRequest) -> str:
    return request.messages[0]["content"]


MODELS = [
    ModelConfig(name="deepseek-coder", max_tokens=8192, cost_per_token=0.001),
    ModelConfig(name="code-llama", max_tokens=4096, cost_per_token=0.0005),
]


def make_router(backend, **overrides) -> ModelRouter:
    settings = {"retry_backoff": 0.0, "retry_backoff_cap": 0.0, "timeout": 5.0, **overrides}
    return ModelRouter(RouterConfig(**settings), MODELS, backend=backend)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def router(backend):
    return make_router(backend)


@pytest.fixture
def tools(tmp_path, router):
    registry = ToolRegistry(working_directory=tmp_path, router=router)
    yield registry
    registry.shutdown()


@pytest.fixture
def memory():
    manager = MemoryManager(MemoryConfig(cleanup_interval=3600))
    yield manager
    manager.shutdown()


def make_agent(cls, router, tools, kind: str, permitted: list[str] | None = None, memory=None):
    from buildcrew.models import AgentConfig

    agent = cls(AgentConfig(id=kind, name=kind.title(), kind=kind, tools=permitted or []), router, tools, memory)
    agent.initialize()
    return agent


def make_task(kind, description="do the thing", files=None, **kwargs):
    from buildcrew.models import FileContext, Task, TaskContext

    context = TaskContext(files=[FileContext(**f) for f in files or []])
    return Task(description=description, kind=kind, context=context, **kwargs)
