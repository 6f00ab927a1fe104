"""
BUILDCREW Orchestrator — The Scheduler

It is NOT smart. It is deterministic.

Responsibilities:
  - Accept tasks and validate them before anything is stored
  - Hold the task table and the dependency graph
  - Pick the next eligible task (dependencies completed, priority, FIFO)
  - Cap the number of in-flight tasks
  - Bind each task kind to an agent
  - Race every attempt against the task timeout and retry with backoff
  - Cancel dependents of tasks that failed or were cancelled
  - Record the audit trail and emit lifecycle events

It never writes code. It only coordinates.
"""

from __future__ import annotations

import itertools
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable

from loguru import logger

from buildcrew.agents import BaseAgent, ProgressCallback
from buildcrew.agents.factory import AgentFactory
from buildcrew.audit_logger import AuditLogger
from buildcrew.config_loader import BuildCrewConfig
from buildcrew.errors import (
    NON_RETRYABLE,
    AttemptTimeoutError,
    BuildCrewError,
    NotFoundError,
    ValidationFailedError,
)
from buildcrew.event_bus import EventBus, Listener, TaskEventType
from buildcrew.memory import MemoryManager
from buildcrew.models import (
    AGENT_FOR_TASK_KIND,
    AgentConfig,
    AuditEntry,
    Priority,
    Task,
    TaskContext,
    TaskKind,
    TaskResult,
    TaskStatus,
)
from buildcrew.parallel import run_with_timeout
from buildcrew.router import ModelBackend, ModelRouter
from buildcrew.tooling import ToolRegistry

ORCHESTRATOR_ID = "orchestrator"


class Orchestrator:
    """
    Owns the task table. Every status change happens here, under one lock,
    and every lifecycle event is emitted from here, outside of it.
    """

    def __init__(
        self,
        config: BuildCrewConfig | None = None,
        router: ModelRouter | None = None,
        tools: ToolRegistry | None = None,
        memory: MemoryManager | None = None,
        event_bus: EventBus | None = None,
        backend: ModelBackend | None = None,
    ):
        self.config = config or BuildCrewConfig()
        self.settings = self.config.orchestrator

        # Core components
        self.router = router or ModelRouter(self.config.router, self.config.models, backend=backend)
        self.tools = tools or ToolRegistry(
            working_directory=Path(self.config.workspace.root),
            environment=self.config.workspace.shell_env,
            router=self.router,
        )
        for tool_config in self.config.tools:
            self.tools.register_tool(tool_config)
        self.memory = memory or MemoryManager(self.config.memory)
        self.memory.initialize()
        self.event_bus = event_bus or EventBus()
        self.factory = AgentFactory(self.router, self.tools, self.memory)

        self.audit_logger: AuditLogger | None = None
        if self.settings.audit_log_path:
            self.audit_logger = AuditLogger(self.settings.audit_log_path, self.event_bus)

        # Task table
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count()
        self._finished: dict[str, threading.Event] = {}
        # Stored but not yet announced; the scheduler leaves these alone
        self._unannounced: set[str] = set()
        self._in_flight = 0
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_tasks,
            thread_name_prefix="buildcrew-task",
        )

        # Agents
        self._agents: dict[str, BaseAgent] = {}
        self._bindings: dict[TaskKind, str] = {}
        for agent_config in self.config.agents:
            self.register_agent(agent_config)

        logger.info(
            f"[ORCH] Ready: {len(self._agents)} agents, "
            f"{self.settings.max_concurrent_tasks} slots, timeout {self.settings.task_timeout:g}s"
        )

    # -----------------------------------------------------------------------
    # Agents
    # -----------------------------------------------------------------------

    def register_agent(self, config: AgentConfig, task_kinds: Iterable[TaskKind | str] | None = None) -> BaseAgent:
        """
        Create an agent through the factory and bind it to task kinds.

        Without `task_kinds`, the agent takes every kind whose default agent
        kind matches its own and that has no agent bound yet.
        """
        agent = self.factory.create_agent(config)
        with self._lock:
            replaced = self._agents.get(config.id)
            self._agents[config.id] = agent
            if task_kinds is not None:
                kinds = [TaskKind(k) for k in task_kinds]
                for kind in kinds:
                    self._bindings[kind] = config.id
            else:
                kinds = [
                    kind for kind, agent_kind in AGENT_FOR_TASK_KIND.items()
                    if agent_kind.value == config.kind
                    and (kind not in self._bindings or self._bindings[kind] == config.id)
                ]
                for kind in kinds:
                    self._bindings[kind] = config.id
        if replaced is not None:
            replaced.shutdown()
        logger.debug(f"[ORCH] Agent {config.id} bound to {[k.value for k in kinds]}")
        return agent

    def get_agent(self, agent_id: str) -> BaseAgent:
        with self._lock:
            agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return agent

    def get_all_agents(self) -> list[BaseAgent]:
        with self._lock:
            return list(self._agents.values())

    def _agent_for(self, kind: TaskKind) -> BaseAgent | None:
        with self._lock:
            agent_id = self._bindings.get(kind)
            return self._agents.get(agent_id) if agent_id else None

    # -----------------------------------------------------------------------
    # Submission
    # -----------------------------------------------------------------------

    def submit(
        self,
        description: str,
        kind: TaskKind | str,
        priority: Priority | str = Priority.MEDIUM,
        dependencies: list[str] | None = None,
        context: TaskContext | None = None,
        task_id: str | None = None,
    ) -> str:
        """Validate, store as pending, emit task:submitted and dispatch. Never blocks on execution."""
        errors: list[str] = []
        if not isinstance(description, str) or not description.strip():
            errors.append("Task description must not be empty")
        try:
            kind = TaskKind(kind)
        except ValueError:
            errors.append(f"Unknown task kind: {kind!r}")
        try:
            priority = Priority(priority)
        except ValueError:
            errors.append(f"Unknown priority: {priority!r}")
        deps = list(dict.fromkeys(dependencies or []))

        with self._lock:
            if self._closed:
                raise BuildCrewError("Orchestrator is shut down")
            unknown = [d for d in deps if d not in self._tasks]
            if unknown:
                errors.append(f"Unknown dependencies: {', '.join(unknown)}")
            if task_id is not None and task_id in self._tasks:
                errors.append(f"Task id already in use: {task_id}")
            if errors:
                raise ValidationFailedError(f"Invalid task: {'; '.join(errors)}", errors)

            fields: dict[str, Any] = {}
            if task_id is not None:
                fields["id"] = task_id
            task = Task(
                description=description,
                kind=kind,
                priority=priority,
                dependencies=deps,
                context=context or TaskContext(),
                **fields,
            )
            self._tasks[task.id] = task
            self._sequence[task.id] = next(self._counter)
            self._finished[task.id] = threading.Event()
            self._unannounced.add(task.id)

        self.memory.create_task_memory(task.id, task.context)
        logger.info(f"[ORCH] Submitted {task.id} ({kind.value}, {priority.value}): {description[:80]}")
        self.event_bus.emit(
            TaskEventType.SUBMITTED,
            task.id,
            {"kind": kind.value, "priority": priority.value, "dependencies": deps},
        )
        with self._lock:
            self._unannounced.discard(task.id)
        self._dispatch()
        return task.id

    # -----------------------------------------------------------------------
    # Scheduling
    # -----------------------------------------------------------------------

    def _next_eligible(self) -> Task | None:
        candidates = [
            t for t in self._tasks.values()
            if t.status == TaskStatus.PENDING
            and t.id not in self._unannounced
            and all(self._tasks[d].status == TaskStatus.COMPLETED for d in t.dependencies)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda t: (t.priority.rank, -self._sequence[t.id]))

    def _collect_blocked(self) -> list[tuple[Task, str]]:
        """Pending tasks with a failed or cancelled dependency, moved to cancelled."""
        blocked = []
        for task in self._tasks.values():
            if task.status != TaskStatus.PENDING or task.id in self._unannounced:
                continue
            dead = [
                d for d in task.dependencies
                if self._tasks[d].status in (TaskStatus.FAILED, TaskStatus.CANCELLED)
            ]
            if dead:
                reason = f"Dependency {dead[0]} {self._tasks[dead[0]].status.value}"
                task.transition(TaskStatus.CANCELLED)
                task.error = reason
                blocked.append((task, reason))
        return blocked

    def _dispatch(self) -> None:
        """Fill free slots. Cancellation of blocked tasks cascades until nothing changes."""
        while True:
            with self._lock:
                if self._closed:
                    return
                blocked = self._collect_blocked()
                task = None
                if self._in_flight < self.settings.max_concurrent_tasks:
                    task = self._next_eligible()
                if task is not None:
                    task.transition(TaskStatus.IN_PROGRESS)
                    self._in_flight += 1

            for cancelled, reason in blocked:
                logger.info(f"[ORCH] Cancelled {cancelled.id}: {reason}")
                self._finish_cancelled(cancelled, reason)

            if task is None:
                if blocked:
                    continue
                return

            try:
                self._executor.submit(self._run_task, task.id)
            except RuntimeError as e:
                # Executor already shut down
                with self._lock:
                    self._in_flight -= 1
                self._fail(task, None, f"Could not schedule task: {e}", None)
                return

    # -----------------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------------

    def _run_task(self, task_id: str) -> None:
        task = self._tasks[task_id]
        try:
            self._execute(task)
        except Exception as e:
            logger.exception(f"[ORCH] Unhandled error in {task_id}: {e}")
            with self._lock:
                still_running = task.status == TaskStatus.IN_PROGRESS
            if still_running:
                self._fail(task, task.assigned_to, f"{type(e).__name__}: {e}", None)
        finally:
            with self._lock:
                self._in_flight -= 1
            self._dispatch()

    def _execute(self, task: Task) -> None:
        self.event_bus.emit(TaskEventType.STARTED, task.id, {"kind": task.kind.value})

        agent = self._agent_for(task.kind)
        if agent is None:
            error = NotFoundError(f"No agent bound for task kind {task.kind.value}")
            logger.error(f"[ORCH] {task.id}: {error}")
            self._fail(task, None, str(error), None)
            return

        attempts =self.settings.max_retries if self.settings.enable_retry else 1

        def progress(percent: int, message: str) -> None:
            self.report_progress(task.id, percent, message)

        last_error = "Task failed"
        last_result: TaskResult | None = None

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                # The binding may have been replaced since the last attempt
                agent = self._agent_for(task.kind) or agent
            with self._lock:
                task.attempts = attempt
                task.assigned_to = agent.id
                snapshot = task.model_copy(deep=True)
            logger.info(f"[ORCH] {task.id} → {agent.id} (attempt {attempt}/{attempts})")

            try:
                result = run_with_timeout(
                    agent.execute, self.settings.task_timeout, snapshot, progress,
                    label=f"task-{task.id}",
                )
            except NON_RETRYABLE as e:
                last_error, last_result = f"{type(e).__name__}: {e}", None
                self._audit_attempt(task, agent, attempt, error=last_error)
                logger.error(f"[ORCH] {task.id} failed without retry: {last_error}")
                break
            except AttemptTimeoutError as e:
                last_error, last_result = str(e), None
                self._audit_attempt(task, agent, attempt, error=last_error)
                logger.warning(f"[ORCH] {task.id} attempt {attempt} timed out")
            except Exception as e:
                last_error, last_result = f"{type(e).__name__}: {e}", None
                self._audit_attempt(task, agent, attempt, error=last_error)
                logger.warning(f"[ORCH] {task.id} attempt {attempt} raised {last_error}")
            else:
                self._audit_attempt(task, agent, attempt, result=result)
                if result.success:
                    self._complete(task, agent.id, result)
                    return
                last_result = result
                last_error = "; ".join(result.errors) or "Agent reported failure"
                logger.warning(f"[ORCH] {task.id} attempt {attempt} unsuccessful: {last_error[:200]}")

            if attempt < attempts:
                delay = self.settings.retry_delay * attempt
                logger.info(f"[ORCH] Retrying {task.id} in {delay:g}s")
                time.sleep(delay)

        self._fail(task, agent.id, last_error, last_result)

    # -----------------------------------------------------------------------
    # Terminal transitions
    # -----------------------------------------------------------------------

    def _complete(self, task: Task, agent_id: str, result: TaskResult) -> None:
        self._audit(task.id, AuditEntry(agent=agent_id, action="task_completed",
                                        output={"artifacts": len(result.artifacts)}))
        final = result.model_copy(update={"audit_log": self._audit_trail(task.id, result)})
        self._store_result(task.id, final)
        with self._lock:
            task.transition(TaskStatus.COMPLETED)
            task.result = final
        logger.success(f"[ORCH] Completed {task.id} in {task.attempts} attempt(s)")
        self.event_bus.emit(TaskEventType.COMPLETED, task.id, {"result": final.model_dump(mode="json")},
                            agent_name=agent_id)
        self._finished[task.id].set()

    def _fail(self, task: Task, agent_id: str | None, error: str, last: TaskResult | None) -> None:
        self._audit(task.id, AuditEntry(agent=agent_id or ORCHESTRATOR_ID, action="task_failed", error=error))
        if last is not None:
            base = last.model_copy(update={"success": False, "errors": list(last.errors) or [error]})
        else:
            base = TaskResult(success=False, errors=[error])
        final = base.model_copy(update={"audit_log": self._audit_trail(task.id, base)})
        self._store_result(task.id, final)
        with self._lock:
            task.transition(TaskStatus.FAILED)
            task.result = final
            task.error = error
        logger.error(f"[ORCH] Failed {task.id}: {error[:200]}")
        self.event_bus.emit(TaskEventType.FAILED, task.id, {"error": error, "errors": final.errors},
                            agent_name=agent_id)
        self._finished[task.id].set()

    def _finish_cancelled(self, task: Task, reason: str) -> None:
        self._audit(task.id, AuditEntry(agent=ORCHESTRATOR_ID, action="task_cancelled", error=reason))
        self.event_bus.emit(TaskEventType.CANCELLED, task.id, {"reason": reason})
        self._finished[task.id].set()

    # -----------------------------------------------------------------------
    # Audit trail
    # -----------------------------------------------------------------------

    def _audit_attempt(self, task: Task, agent: BaseAgent, attempt: int,
                       result: TaskResult | None = None, error: str | None = None) -> None:
        if result is not None:
            for entry in result.audit_log:
                self._audit(task.id, entry)
            error = None if result.success else "; ".join(result.errors) or "Agent reported failure"
        self._audit(task.id, AuditEntry(
            agent=agent.id,
            action="execute_attempt",
            input={"attempt": attempt, "kind": task.kind.value},
            output={"success": result.success, "metrics": result.metrics.model_dump()} if result else None,
            error=error,
        ))

    def _audit(self, task_id: str, entry: AuditEntry) -> None:
        if not self.settings.enable_audit_log:
            return
        try:
            self.memory.add_audit_entry(task_id, entry)
        except NotFoundError:
            logger.debug(f"[ORCH] No task memory for {task_id}, audit entry {entry.action} dropped")

    def _audit_trail(self, task_id: str, result: TaskResult) -> list[AuditEntry]:
        if not self.settings.enable_audit_log:
            return list(result.audit_log)
        try:
            return list(self.memory.get_task_memory(task_id).audit_log)
        except NotFoundError:
            return list(result.audit_log)

    def _store_result(self, task_id: str, result: TaskResult) -> None:
        try:
            self.memory.store_task_result(task_id, result)
        except NotFoundError:
            logger.debug(f"[ORCH] No task memory for {task_id}, result kept on the task only")

    # -----------------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------------

    def cancel(self, task_id: str) -> bool:
        """Cancel a pending task. Running and finished tasks are left alone."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                logger.warning(f"[ORCH] Cancel ignored, unknown task {task_id}")
                return False
            if task.status == TaskStatus.CANCELLED:
                return True
            if task.status != TaskStatus.PENDING:
                logger.warning(f"[ORCH] Cancel refused for {task_id}: task is {task.status.value}")
                return False
            task.transition(TaskStatus.CANCELLED)
            task.error = "Cancelled by request"

        logger.info(f"[ORCH] Cancelled {task_id}")
        self._finish_cancelled(task, "Cancelled by request")
        self._dispatch()
        return True

    def report_progress(self, task_id: str, percent: int, message: str = "") -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"Task not found: {task_id}")
            running = task.status == TaskStatus.IN_PROGRESS
        if not running:
            # Late report from an abandoned attempt
            logger.debug(f"[ORCH] Progress for {task_id} dropped, task is {task.status.value}")
            return
        percent = max(0, min(100, int(percent)))
        self.event_bus.emit(TaskEventType.PROGRESS, task_id, {"percent": percent, "message": message},
                            agent_name=task.assigned_to)

    def on_task_progress(self, task_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Call `callback(percent, message)` on every progress report for one task."""
        return self.event_bus.subscribe(
            lambda event: callback(event.payload["percent"], event.payload.get("message", "")),
            task_id=task_id,
            event_types=[TaskEventType.PROGRESS],
        )

    def subscribe(
        self,
        callback: Listener,
        task_id: str | None = None,
        event_types: Iterable[TaskEventType] | None = None,
    ) -> Callable[[], None]:
        return self.event_bus.subscribe(callback, task_id=task_id, event_types=event_types)

    def wait_for(self, task_id: str, timeout: float | None = None) -> Task:
        """Block until the task reaches a terminal status and return a snapshot of it."""
        with self._lock:
            finished = self._finished.get(task_id)
        if finished is None:
            raise NotFoundError(f"Task not found: {task_id}")
        if not finished.wait(timeout):
            raise AttemptTimeoutError(f"Task {task_id} still running after {timeout}s")
        return self.get_task(task_id)

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"Task not found: {task_id}")
            return task.model_copy(deep=True)

    def get_all_tasks(self) -> list[Task]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._tasks.values()]

    def stats(self) -> dict[str, Any]:
        with self._lock:
            counts = {s.value: 0 for s in TaskStatus}
            for t in self._tasks.values():
                counts[t.status.value] += 1
            return {"tasks": counts, "in_flight": self._in_flight, "agents": len(self._agents)}

    # -----------------------------------------------------------------------
    # Shutdown
    # -----------------------------------------------------------------------

    def shutdown(self, wait: bool = True) -> None:
        """Cancel pending work, let running tasks finish (when `wait`), then stop every component."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            pending = [t for t in self._tasks.values() if t.status == TaskStatus.PENDING]
            for task in pending:
                task.transition(TaskStatus.CANCELLED)
                task.error = "Orchestrator shut down"
        logger.info(f"[ORCH] Shutting down ({len(pending)} pending task(s) cancelled)")
        for task in pending:
            self._finish_cancelled(task, "Orchestrator shut down")

        self._executor.shutdown(wait=wait)

        for agent in self.get_all_agents():
            try:
                agent.shutdown()
            except BuildCrewError as e:
                logger.warning(f"[ORCH] Agent {agent.id} shutdown failed: {e}")
        self.tools.shutdown()
        self.router.shutdown()
        self.memory.shutdown()
        if self.audit_logger is not None:
            self.audit_logger.close()
        self.event_bus.clear()
