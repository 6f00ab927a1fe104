"""
BUILDCREW Agent Roster

Each agent is:
  - A system prompt
  - A typed request schema the model must fill in (with a heuristic fallback)
  - A domain action over one model call per file or section
  - Optional tool applications (writes, lint, test runs)

The base class owns the lifecycle:
  uninitialized → initialized → (executing)* → shut down
"""

from __future__ import annotations

import json
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from buildcrew.errors import (
    AgentNotInitializedError,
    AgentShutdownError,
    DegradedParseError,
    ValidationFailedError,
)
from buildcrew.indexer import LANGUAGE_BY_EXTENSION
from buildcrew.models import (
    AgentConfig,
    Artifact,
    AuditEntry,
    FileContext,
    ModelRequest,
    Task,
    TaskMetrics,
    TaskResult,
    ToolResult,
)

if TYPE_CHECKING:
    from buildcrew.memory import MemoryManager
    from buildcrew.router import ModelRouter
    from buildcrew.tooling import ToolRegistry

M = TypeVar("M", bound=BaseModel)

ProgressCallback = Callable[[int, str], None]


class AgentState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    SHUT_DOWN = "shut_down"


class ToolApplication(BaseModel):
    """One attempt to apply a result through a tool."""
    tool: str
    target: str
    success: bool
    error: str | None = None


@dataclass
class AgentRun:
    """Bookkeeping for a single execute() call."""
    task: Task
    progress: ProgressCallback | None = None
    started: float = field(default_factory=time.monotonic)
    tokens_used: int = 0
    cost: float = 0.0
    tool_calls: int = 0
    degraded: bool = False
    applications: list[ToolApplication] = field(default_factory=list)
    audit: list[AuditEntry] = field(default_factory=list)

    @property
    def files(self) -> list[FileContext]:
        return list(self.task.context.files) if self.task.context else []

    @property
    def working_directory(self) -> str:
        return self.task.context.environment.working_directory if self.task.context else "."

    def report(self, percent: int, message: str) -> None:
        if self.progress:
            self.progress(percent, message)


def strip_code_fences(content: str) -> str:
    """Remove ``` fences (and a bare `json` tag) around a model reply."""
    content = content.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```") and not l.strip().lower() == "json"]
        content = "\n".join(lines)
    return content.strip()


class BaseAgent(ABC):
    """
    Base class for all BUILDCREW agents.

    Subclasses define:
      - system_prompt: str — agent personality + constraints
      - on_execute(run) — the per-task strategy
    and may override on_initialize() / on_shutdown().
    """

    system_prompt: str = "You are a helpful assistant."

    def __init__(
        self,
        config: AgentConfig,
        router: "ModelRouter",
        tools: "ToolRegistry",
        memory: "MemoryManager | None" = None,
    ):
        self.config = config
        self.router = router
        self.tools = tools
        self.memory = memory
        self.log = logger.bind(agent=config.id)
        self._state = AgentState.UNINITIALIZED
        self._state_lock = threading.Lock()

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def kind(self) -> str:
        return self.config.kind

    @property
    def state(self) -> AgentState:
        return self._state

    # -- lifecycle --------------------------------------------------------

    def initialize(self) -> None:
        with self._state_lock:
            if self._state == AgentState.SHUT_DOWN:
                raise AgentShutdownError(f"Agent {self.id} is shut down")
            if self._state == AgentState.INITIALIZED:
                return
            self.on_initialize()
            self._state = AgentState.INITIALIZED
        self.log.info(f"[{self.tag}] Initialized")

    def execute(self, task: Task, progress: ProgressCallback | None = None) -> TaskResult:
        """Run the strategy for one task and stamp the run's metrics on the result."""
        if self._state == AgentState.UNINITIALIZED:
            raise AgentNotInitializedError(f"Agent {self.id} is not initialized")
        if self._state == AgentState.SHUT_DOWN:
            raise AgentShutdownError(f"Agent {self.id} is shut down")

        run = AgentRun(task=task, progress=progress)
        self.log.info(f"[{self.tag}] Executing {task.id}: {task.description[:80]}")
        result = self.on_execute(run)

        metrics = TaskMetrics(
            duration_ms=int((time.monotonic() - run.started) * 1000),
            tokens_used=run.tokens_used,
            tool_calls=run.tool_calls,
            cost=run.cost,
        )
        return result.model_copy(update={"metrics": metrics, "audit_log": list(result.audit_log) + run.audit})

    def shutdown(self) -> None:
        with self._state_lock:
            if self._state == AgentState.SHUT_DOWN:
                return
            self.on_shutdown()
            self._state = AgentState.SHUT_DOWN
        self.log.info(f"[{self.tag}] Shut down")

    def on_initialize(self) -> None:
        pass

    @abstractmethod
    def on_execute(self, run: AgentRun) -> TaskResult:
        ...

    def on_shutdown(self) -> None:
        pass

    @property
    def tag(self) -> str:
        return self.kind.upper()

    # -- model helpers ----------------------------------------------------

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}

    def ask(self, run: AgentRun, content: str, json_mode: bool = False, max_tokens: int | None = None) -> str:
        """One model round trip. Failures propagate to the caller."""
        request = ModelRequest(
            messages=[self._system_msg(), self._user_msg(content)],
            model=self.config.model,
            temperature=self.config.temperature,
            max_tokens=max_tokens or self.config.max_tokens,
            response_format={"type": "json_object"} if json_mode else None,
        )
        response = self.router.generate_response(request)
        run.tokens_used += response.usage.total_tokens
        run.cost += response.cost
        return response.content

    def ask_json(self, run: AgentRun, content: str, schema: type[M]) -> M:
        """Ask for JSON and validate it against `schema`."""
        raw = strip_code_fences(self.ask(run, content, json_mode=True))
        try:
            return schema.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise DegradedParseError(f"{schema.__name__}: {e}", raw=raw[:1000]) from e

    def request_or_fallback(self, run: AgentRun, content: str, schema: type[M], fallback: Callable[[], M]) -> M:
        """Typed request from the model, or the heuristic one if the reply is unusable."""
        try:
            return self.ask_json(run, content, schema)
        except DegradedParseError as e:
            self.log.warning(f"[{self.tag}] Falling back to heuristic request: {e}")
            self.log.debug(f"[{self.tag}] Raw response: {e.raw[:500]}")
            run.degraded = True
            run.audit.append(AuditEntry(agent=self.id, action="fallback_request", error=str(e)))
            return fallback()

    # -- tool helpers -----------------------------------------------------

    def can_use(self, tool: str) -> bool:
        return tool in self.config.tools and self.tools.has_tool(tool)

    def use_tool(self, run: AgentRun, tool: str, args: dict[str, Any], target: str = "") -> ToolResult | None:
        """Call a permitted tool and record the application. None if not permitted."""
        if not self.can_use(tool):
            return None
        run.tool_calls += 1
        try:
            result = self.tools.execute_tool(tool, args)
        except ValidationFailedError as e:
            result = ToolResult(success=False, error="; ".join(e.errors))
        run.applications.append(ToolApplication(tool=tool, target=target, success=result.success, error=result.error))
        if not result.success:
            self.log.warning(f"[{self.tag}] {tool} on {target or '-'} failed: {result.error}")
        return result

    # -- results ----------------------------------------------------------

    def create_task_result(
        self,
        success: bool,
        output: Any = None,
        errors: list[str] | None = None,
        artifacts: list[Artifact] | None = None,
    ) -> TaskResult:
        """Result with zeroed metrics. execute() fills them in."""
        return TaskResult(
            success=success,
            output=output,
            errors=list(errors or []),
            artifacts=list(artifacts or []),
            metrics=TaskMetrics(),
        )


def detect_language(path: str) -> str:
    for ext, language in LANGUAGE_BY_EXTENSION.items():
        if path.endswith(ext):
            return language
    return "text"


def dominant_language(files: list[FileContext], default: str = "python") -> str:
    counts: dict[str, int] = {}
    for f in files:
        language = f.language if f.language != "text" else detect_language(f.path)
        if language != "text":
            counts[language] = counts.get(language, 0) + 1
    if not counts:
        return default
    return max(counts.items(), key=lambda kv: kv[1])[0]
