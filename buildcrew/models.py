"""
BUILDCREW Data Model

Tasks, results, contexts and the declarative configs for agents,
tools and models. Everything the engine passes between components
is one of these pydantic models.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from buildcrew.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TaskKind(str, Enum):
    PLANNING = "planning"
    RESEARCH = "research"
    CODE_GENERATION = "code-generation"
    TESTING = "testing"
    PACKAGING = "packaging"
    REVIEW = "review"
    SECURITY = "security"
    DOCUMENTATION = "documentation"
    RTL = "rtl"


class AgentKind(str, Enum):
    PLANNER = "planner"
    RESEARCHER = "researcher"
    CODER = "coder"
    TESTER = "tester"
    PACKAGER = "packager"
    REVIEWER = "reviewer"
    SECURITY = "security"
    DX_WRITER = "dx-writer"


AGENT_FOR_TASK_KIND: dict[TaskKind, AgentKind] = {
    TaskKind.PLANNING: AgentKind.PLANNER,
    TaskKind.RESEARCH: AgentKind.RESEARCHER,
    TaskKind.CODE_GENERATION: AgentKind.CODER,
    TaskKind.TESTING: AgentKind.TESTER,
    TaskKind.PACKAGING: AgentKind.PACKAGER,
    TaskKind.REVIEW: AgentKind.REVIEWER,
    TaskKind.SECURITY: AgentKind.SECURITY,
    TaskKind.DOCUMENTATION: AgentKind.DX_WRITER,
    TaskKind.RTL: AgentKind.CODER,
}

_unmapped = set(TaskKind) - set(AGENT_FOR_TASK_KIND)
if _unmapped:
    raise RuntimeError(f"Task kinds without an agent: {sorted(k.value for k in _unmapped)}")


def agent_kind_for(kind: TaskKind) -> AgentKind:
    return AGENT_FOR_TASK_KIND[kind]


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


# Forward-only. Nothing re-enters PENDING.
_ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELLED: set(),
}


class ArtifactType(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    PACKAGE = "package"
    DOCKER_IMAGE = "docker-image"
    INSTALLER = "installer"
    TEST_REPORT = "test-report"
    PLAN = "plan"
    REPORT = "report"


class ToolKind(str, Enum):
    BUILTIN = "builtin"
    EXTERNAL = "external"
    MODEL = "model"


# ---------------------------------------------------------------------------
# Task context
# ---------------------------------------------------------------------------

class FileContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    content: str = ""
    language: str = "text"
    modified: bool = False


class EnvironmentContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    os: str = ""
    working_directory: str = "."
    available_tools: list[str] = Field(default_factory=list)
    python_version: str | None = None


class MemoryRefs(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_memory: str | None = None
    repo_memory: str | None = None
    tool_results: list[str] = Field(default_factory=list)


class TaskContext(BaseModel):
    """Snapshot handed to an agent. Replaced, never edited in place."""
    model_config = ConfigDict(frozen=True)

    files: list[FileContext] = Field(default_factory=list)
    environment: EnvironmentContext = Field(default_factory=EnvironmentContext)
    memory: MemoryRefs = Field(default_factory=MemoryRefs)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class Artifact(BaseModel):
    type: ArtifactType
    path: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskMetrics(BaseModel):
    duration_ms: int = 0
    tokens_used: int = 0
    tool_calls: int = 0
    cost: float = 0.0


class AuditEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    agent: str
    action: str
    input: Any = None
    output: Any = None
    error: str | None = None


class TaskResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    output: Any = None
    errors: list[str] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)
    metrics: TaskMetrics = Field(default_factory=TaskMetrics)
    audit_log: list[AuditEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

class Task(BaseModel):
    id: str = Field(default_factory=lambda: new_id("task"))
    description: str
    kind: TaskKind
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    assigned_to: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    context: TaskContext | None = None
    result: TaskResult | None = None
    error: str | None = None
    attempts: int = 0

    def transition(self, status: TaskStatus) -> None:
        """Move to `status`, refusing anything but a forward step."""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Task {self.id}: {self.status.value} -> {status.value} is not allowed"
            )
        self.status = status
        self.updated_at = utcnow()


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class AgentConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    kind: str
    model: str | None = None
    temperature: float = 0.2
    max_tokens: int = 4096
    tools: list[str] = Field(default_factory=list)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        # AgentKind members and their string values must key the same strategy
        if isinstance(value, AgentKind):
            return value.value
        return value


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

ParameterType = Literal["string", "number", "boolean", "array", "object"]


class ValidationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["min", "max", "regex", "enum", "custom"]
    value: Any = None
    message: str | None = None


class ToolParameter(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: ParameterType
    description: str = ""
    required: bool = False
    default: Any = None
    validation: list[ValidationRule] = Field(default_factory=list)


class ToolConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    version: str = "1.0.0"
    kind: ToolKind = ToolKind.BUILTIN
    category: str = "general"
    timeout: float = 30.0
    retryable: bool = False
    max_retries: int = 1
    parameters: list[ToolParameter] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    command: str | None = None


class ToolResult(BaseModel):
    success: bool
    output: Any = None
    error: str | None = None
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    duration_ms: int = 0


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ModelConfig(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    name: str
    type: Literal["open", "closed"] = "open"
    max_tokens: int = 8192
    supports_streaming: bool = True
    cost_per_token: float = 0.0
    endpoint: str | None = None
    provider_model: str | None = None


class ModelRequest(BaseModel):
    messages: list[dict[str, str]]
    model: str | None = None
    temperature: float = 0.2
    max_tokens: int = 4096
    stream: bool = False
    response_format: dict | None = None

    def prompt_text(self) -> str:
        return " ".join(m.get("content", "") for m in self.messages)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ModelResponse(BaseModel):
    content: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str
    finish_reason: str = "stop"
    latency_ms: int = 0
    cost: float = 0.0
