"""
BUILDCREW Tool Registry

Registers tools, validates arguments against each tool's parameter
schema, dispatches to the tool's strategy and keeps per-tool metrics.

An invalid call is rejected with every violation listed and the
tool is never touched. Execution failures come back as ToolResult
objects so callers can branch without exception handling.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from buildcrew.errors import ExecutionError, NotFoundError, ValidationFailedError
from buildcrew.models import ToolConfig, ToolKind, ToolParameter, ToolResult, ValidationRule, utcnow
from buildcrew.tooling.tools import (
    BUILTIN_HANDLERS,
    DEFAULT_MODEL_TOOL_CONFIGS,
    DEFAULT_TOOL_CONFIGS,
    BuiltinHandler,
    BuiltinTool,
    ExternalTool,
    ModelTool,
    Tool,
    ToolContext,
)

if TYPE_CHECKING:
    from buildcrew.router import ModelRouter


@dataclass
class ToolMetrics:
    calls: int = 0
    successes: int = 0
    failures: int = 0
    total_duration_ms: int = 0
    average_latency_ms: float = 0.0
    last_used: datetime | None = None

    def record(self, success: bool, duration_ms: int) -> None:
        self.calls += 1
        if success:
            self.successes += 1
        else:
            self.failures += 1
        self.total_duration_ms += duration_ms
        self.average_latency_ms = self.total_duration_ms / self.calls
        self.last_used = utcnow()

    def snapshot(self) -> "ToolMetrics":
        return ToolMetrics(**asdict(self))


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------

_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, (list, tuple)),
    "object": lambda v: isinstance(v, dict),
}


def _type_name(value: Any) -> str:
    for name, check in _TYPE_CHECKS.items():
        if check(value):
            return name
    return type(value).__name__


def _check_rule(name: str, value: Any, rule: ValidationRule) -> str | None:
    message = rule.message or f"Parameter '{name}' failed {rule.type} rule"
    if rule.type == "min":
        if _TYPE_CHECKS["number"](value) and value < rule.value:
            return message
    elif rule.type == "max":
        if _TYPE_CHECKS["number"](value) and value > rule.value:
            return message
    elif rule.type == "regex":
        if isinstance(value, str) and not re.search(rule.value, value):
            return message
    elif rule.type == "enum":
        if value not in rule.value:
            return message
    elif rule.type == "custom":
        if callable(rule.value) and not rule.value(value):
            return message
    return None


def validate_arguments(parameters: list[ToolParameter], args: dict[str, Any]) -> list[str]:
    """Return every violation of `parameters` by `args`. Empty means valid."""
    errors: list[str] = []
    by_name = {p.name: p for p in parameters}

    for param in parameters:
        if param.required and param.name not in args:
            errors.append(f"Missing required parameter: {param.name}")

    for name, value in args.items():
        param = by_name.get(name)
        if param is None:
            errors.append(f"Unknown parameter: {name}")
            continue
        if value is None:
            if param.required:
                errors.append(f"Missing required parameter: {name}")
            continue
        if not _TYPE_CHECKS[param.type](value):
            errors.append(f"Parameter '{name}' should be of type {param.type}, got {_type_name(value)}")
            continue
        for rule in param.validation:
            error = _check_rule(name, value, rule)
            if error:
                errors.append(error)

    return errors


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ToolRegistry:
    def __init__(
        self,
        working_directory: Path | None = None,
        environment: dict[str, str] | None = None,
        router: "ModelRouter | None" = None,
        register_defaults: bool = True,
    ):
        self.context = ToolContext(
            working_directory=(working_directory or Path.cwd()).resolve(),
            environment=dict(environment or {}),
        )
        self.router = router
        self._tools: dict[str, Tool] = {}
        self._metrics: dict[str, ToolMetrics] = {}
        self._lock = threading.Lock()
        if register_defaults:
            self.register_default_tools()

    def register_default_tools(self) -> None:
        for config in DEFAULT_TOOL_CONFIGS:
            self.register_tool(config)
        if self.router is not None:
            for config in DEFAULT_MODEL_TOOL_CONFIGS:
                self.register_tool(config)
        logger.debug(f"[TOOLS] {len(self._tools)} default tools registered")

    def _build_strategy(self, config: ToolConfig, handler: BuiltinHandler | None) -> Tool:
        if config.kind == ToolKind.BUILTIN:
            handler = handler or BUILTIN_HANDLERS.get(config.name)
            if handler is None:
                raise ValidationFailedError(f"No built-in implementation for tool: {config.name}")
            return BuiltinTool(config, handler)
        if config.kind == ToolKind.EXTERNAL:
            if not config.command:
                raise ValidationFailedError(f"External tool {config.name} needs a command template")
            return ExternalTool(config)
        if self.router is None:
            raise ValidationFailedError(f"Model-backed tool {config.name} needs a model router")
        return ModelTool(config, self.router)

    def register_tool(
        self,
        config: ToolConfig,
        handler: BuiltinHandler | None = None,
        tool: Tool | None = None,
    ) -> None:
        """Register a tool. Names are unique; a duplicate is a validation error."""
        strategy = tool or self._build_strategy(config, handler)
        with self._lock:
            if config.name in self._tools:
                raise ValidationFailedError(f"Tool already registered: {config.name}")
            self._tools[config.name] = strategy
            self._metrics[config.name] = ToolMetrics()
        logger.debug(f"[TOOLS] Registered {config.name} ({config.kind.value})")

    def has_tool(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def get_tool(self, name: str) -> Tool:
        with self._lock:
            tool = self._tools.get(name)
        if tool is None:
            raise NotFoundError(f"Tool not found: {name}")
        return tool

    def _record(self, name: str, success: bool, duration_ms: int) -> None:
        with self._lock:
            metrics = self._metrics.get(name)
            if metrics is not None:
                metrics.record(success, duration_ms)

    def execute_tool(self, name: str, args: dict[str, Any] | None = None) -> ToolResult:
        """Validate `args`, run the tool and record metrics."""
        tool = self.get_tool(name)
        config = tool.config
        args = dict(args or {})
        start = time.monotonic()

        errors = validate_arguments(config.parameters, args)
        if errors:
            self._record(name, False, 0)
            logger.warning(f"[TOOLS] Rejected {name}: {'; '.join(errors)}")
            raise ValidationFailedError(f"Invalid arguments for {name}: {', '.join(errors)}", errors=errors)

        for param in config.parameters:
            if param.name not in args and param.default is not None:
                args[param.name] = param.default

        attempts = max(1, config.max_retries) if config.retryable else 1
        try:
            result = Retrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=0.1, max=2),
                retry=retry_if_exception_type(Exception),
                reraise=True,
            )(tool.execute, args, self.context)
        except Exception as e:
            duration = int((time.monotonic() - start) * 1000)
            self._record(name, False, duration)
            logger.error(f"[TOOLS] {name} failed: {e}")
            if isinstance(e, ExecutionError):
                return ToolResult(
                    success=False, error=str(e), stdout=e.stdout, stderr=e.stderr,
                    exit_code=e.exit_code, duration_ms=duration,
                )
            return ToolResult(success=False, error=str(e), duration_ms=duration)

        duration = int((time.monotonic() - start) * 1000)
        self._record(name, result.success, duration)
        logger.debug(f"[TOOLS] {name} {'ok' if result.success else 'failed'} in {duration}ms")
        if not result.duration_ms:
            result = result.model_copy(update={"duration_ms": duration})
        return result

    def get_tool_configs(self) -> list[ToolConfig]:
        with self._lock:
            return [tool.config for tool in self._tools.values()]

    def get_tool_metrics(self, name: str | None = None) -> ToolMetrics | dict[str, ToolMetrics]:
        with self._lock:
            if name is not None:
                metrics = self._metrics.get(name)
                if metrics is None:
                    raise NotFoundError(f"Tool not found: {name}")
                return metrics.snapshot()
            return {n: m.snapshot() for n, m in self._metrics.items()}

    def update_context(
        self,
        working_directory: Path | None = None,
        environment: dict[str, str] | None = None,
    ) -> None:
        with self._lock:
            if working_directory is not None:
                self.context.working_directory = Path(working_directory).resolve()
            if environment is not None:
                self.context.environment = {**self.context.environment, **environment}

    def shutdown(self) -> None:
        logger.info("[TOOLS] Shutting down")
        with self._lock:
            tools = list(self._tools.values())
            self._tools.clear()
            self._metrics.clear()
        for tool in tools:
            try:
                tool.shutdown()
            except Exception as e:
                logger.error(f"[TOOLS] Failed to shut down {tool.config.name}: {e}")
