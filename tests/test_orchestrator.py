import threading
import time

import pytest

from buildcrew.agents import AgentRun, AgentState, BaseAgent
from buildcrew.agents.coder import CoderAgent
from buildcrew.config_loader import BuildCrewConfig, MemoryConfig, OrchestratorConfig
from buildcrew.errors import AttemptTimeoutError, BuildCrewError, NotFoundError, ValidationFailedError
from buildcrew.event_bus import TaskEventType
from buildcrew.memory import MemoryManager
from buildcrew.models import AgentConfig, Priority, TaskKind, TaskStatus
from buildcrew.orchestrator import Orchestrator
from buildcrew.tooling import ToolRegistry

from conftest import FakeBackend, make_router


class ScriptedAgent(BaseAgent):
    """
    Acts out its task description:
      ok | sleep:<s> | wait | stall | fail | flaky:<n> | crash | invalid

    `stall` waits like `wait`, then fails if the agent was shut down meanwhile.
    """

    def on_initialize(self):
        self.calls: list[str] = []
        self.started: list[float] = []
        self.gate = threading.Event()
        self.running = 0
        self.peak = 0
        self._lock = threading.Lock()

    def on_execute(self, run: AgentRun):
        task = run.task
        with self._lock:
            self.calls.append(task.id)
            self.started.append(time.monotonic())
            attempt = self.calls.count(task.id)
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            run.report(50, "halfway")
            return self._act(task.description, attempt)
        finally:
            with self._lock:
                self.running -= 1

    def _act(self, description: str, attempt: int):
        verb, _, arg = description.partition(":")
        if verb == "sleep":
            time.sleep(float(arg))
        elif verb == "wait":
            self.gate.wait(5)
        elif verb == "stall":
            self.gate.wait(5)
            if self.state == AgentState.SHUT_DOWN:
                return self.create_task_result(False, errors=["agent went away"])
        elif verb == "fail":
            return self.create_task_result(False, errors=["nope"])
        elif verb == "flaky" and attempt <= int(arg):
            return self.create_task_result(False, errors=[f"flake {attempt}"])
        elif verb == "crash":
            raise RuntimeError("boom")
        elif verb == "invalid":
            raise ValidationFailedError("bad input")
        return self.create_task_result(True, output=description)


def _orchestrator(tmp_path, bind=True, memory=None, **settings):
    settings = {"retry_delay": 0.0, "task_timeout": 5.0, **settings}
    router = make_router(FakeBackend())
    orch = Orchestrator(
        BuildCrewConfig(orchestrator=OrchestratorConfig(**settings)),
        router=router,
        tools=ToolRegistry(working_directory=tmp_path, router=router),
        memory=memory if memory is not None else MemoryManager(MemoryConfig(cleanup_interval=3600)),
    )
    if bind:
        orch.factory.register_strategy("scripted", ScriptedAgent)
        orch.register_agent(AgentConfig(id="scripted", name="Scripted", kind="scripted"),
                            task_kinds=[TaskKind.CODE_GENERATION])
    return orch


@pytest.fixture
def make_orch(tmp_path):
    made = []

    def factory(**settings):
        orch = _orchestrator(tmp_path, **settings)
        made.append(orch)
        return orch

    yield factory
    for orch in made:
        for agent in orch.get_all_agents():
            if isinstance(agent, ScriptedAgent):
                agent.gate.set()
        orch.shutdown()


def _submit(orch, description, **kwargs):
    return orch.submit(description, TaskKind.CODE_GENERATION, **kwargs)


def _events(orch):
    seen = []
    orch.subscribe(lambda e: seen.append((e.task_id, e.event_type)))
    return seen


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

def test_invalid_submission_lists_every_error_and_stores_nothing(make_orch):
    orch = make_orch()
    seen = _events(orch)

    with pytest.raises(ValidationFailedError) as info:
        orch.submit("  ", "astrology", "urgent", ["task-missing"])

    assert len(info.value.errors) == 4
    assert "Unknown dependencies: task-missing" in info.value.errors
    assert orch.get_all_tasks() == []
    assert seen == []


def test_duplicate_task_id_is_rejected(make_orch):
    orch = make_orch()
    _submit(orch, "ok", task_id="one")
    with pytest.raises(ValidationFailedError):
        _submit(orch, "ok", task_id="one")


def test_task_runs_to_completion_with_ordered_events(make_orch):
    orch = make_orch()
    seen = _events(orch)

    task_id = _submit(orch, "ok")
    task = orch.wait_for(task_id, timeout=5)

    assert task.status == TaskStatus.COMPLETED
    assert task.result.success
    assert task.result.output == "ok"
    assert task.assigned_to == "scripted"
    assert task.attempts == 1
    assert [t for _, t in seen] == [
        TaskEventType.SUBMITTED, TaskEventType.STARTED, TaskEventType.PROGRESS, TaskEventType.COMPLETED,
    ]


def test_result_carries_the_audit_trail(make_orch):
    orch = make_orch()
    task = orch.wait_for(_submit(orch, "ok"), timeout=5)
    actions = [e.action for e in task.result.audit_log]
    assert actions == ["execute_attempt", "task_completed"]
    assert orch.memory.get_task_memory(task.id).results["result-1"].success


class SlowMemory(MemoryManager):
    """Holds up task memory creation while `delay` is set."""

    delay = 0.0

    def create_task_memory(self, task_id, context=None):
        time.sleep(self.delay)
        return super().create_task_memory(task_id, context)


def test_task_is_not_dispatched_before_it_is_announced(make_orch):
    memory = SlowMemory(MemoryConfig(cleanup_interval=3600))
    orch = make_orch(max_concurrent_tasks=1, memory=memory)
    seen = _events(orch)

    first = _submit(orch, "sleep:0.1")
    memory.delay = 0.5
    second = _submit(orch, "ok")
    task = orch.wait_for(second, timeout=5)

    # the first task finished while the second was still being stored
    assert seen.index((first, TaskEventType.COMPLETED)) < seen.index((second, TaskEventType.SUBMITTED))
    assert [t for task_id, t in seen if task_id == second] == [
        TaskEventType.SUBMITTED, TaskEventType.STARTED, TaskEventType.PROGRESS, TaskEventType.COMPLETED,
    ]
    assert task.status == TaskStatus.COMPLETED
    assert [e.action for e in task.result.audit_log] == ["execute_attempt", "task_completed"]
    stored = orch.memory.get_task_memory(second)
    assert stored.results["result-1"].success
    assert [e.action for e in stored.audit_log] == ["execute_attempt", "task_completed"]


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

def test_priority_then_submission_order(make_orch):
    orch = make_orch(max_concurrent_tasks=1)
    agent = orch.get_agent("scripted")
    blocker = _submit(orch, "wait")
    low = _submit(orch, "ok", priority=Priority.LOW)
    high1 = _submit(orch, "ok", priority=Priority.HIGH)
    medium = _submit(orch, "ok", priority="medium")
    high2 = _submit(orch, "ok", priority=Priority.HIGH)

    agent.gate.set()
    for task_id in (blocker, low, high1, medium, high2):
        orch.wait_for(task_id, timeout=5)

    assert agent.calls == [blocker, high1, high2, medium, low]


def test_dependents_wait_for_completion(make_orch):
    orch = make_orch()
    agent = orch.get_agent("scripted")
    first = _submit(orch, "wait")
    second = _submit(orch, "ok", dependencies=[first])
    independent = _submit(orch, "ok")

    orch.wait_for(independent, timeout=5)
    assert orch.get_task(second).status == TaskStatus.PENDING

    agent.gate.set()
    assert orch.wait_for(second, timeout=5).status == TaskStatus.COMPLETED
    assert agent.calls.index(second) > agent.calls.index(first)


def test_concurrency_ceiling(make_orch):
    orch = make_orch(max_concurrent_tasks=2)
    ids = [_submit(orch, "sleep:0.1") for _ in range(5)]
    for task_id in ids:
        orch.wait_for(task_id, timeout=5)
    assert orch.get_agent("scripted").peak == 2


def test_failed_dependency_cascades_cancellation(make_orch):
    orch = make_orch(max_retries=1)
    root = _submit(orch, "fail")
    child = _submit(orch, "ok", dependencies=[root])
    grandchild = _submit(orch, "ok", dependencies=[child])

    final = orch.wait_for(grandchild, timeout=5)

    assert final.status == TaskStatus.CANCELLED
    assert final.error == f"Dependency {child} cancelled"
    assert orch.get_task(child).error == f"Dependency {root} failed"
    assert orch.get_agent("scripted").calls == [root]


# ---------------------------------------------------------------------------
# Retries and timeouts
# ---------------------------------------------------------------------------

def test_unsuccessful_attempts_are_retried(make_orch):
    orch = make_orch(max_retries=3)
    task = orch.wait_for(_submit(orch, "flaky:2"), timeout=5)
    assert task.status == TaskStatus.COMPLETED
    assert task.attempts == 3
    assert [e.action for e in task.result.audit_log].count("execute_attempt") == 3


def test_retries_exhausted(make_orch):
    orch = make_orch(max_retries=2)
    task = orch.wait_for(_submit(orch, "fail"), timeout=5)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 2
    assert task.error == "nope"
    assert task.result.errors == ["nope"]


def test_retry_delay_grows_with_each_attempt(make_orch):
    orch = make_orch(retry_delay=0.05, max_retries=3)
    agent = orch.get_agent("scripted")

    start = time.monotonic()
    task = orch.wait_for(_submit(orch, "fail"), timeout=5)
    elapsed = time.monotonic() - start

    assert task.status == TaskStatus.FAILED
    assert task.attempts == 3
    assert task.result.errors == ["nope"]
    assert elapsed >= 0.05 * (1 + 2)
    first_gap, second_gap = (b - a for a, b in zip(agent.started, agent.started[1:]))
    assert first_gap >= 0.05
    assert second_gap >= 0.1


def test_retry_can_be_disabled(make_orch):
    orch = make_orch(enable_retry=False, max_retries=3)
    task = orch.wait_for(_submit(orch, "crash"), timeout=5)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 1
    assert task.error == "RuntimeError: boom"


def test_raised_errors_are_retried(make_orch):
    orch = make_orch(max_retries=3)
    task = orch.wait_for(_submit(orch, "crash"), timeout=5)
    assert task.attempts == 3
    assert len(orch.get_agent("scripted").calls) == 3


def test_non_retryable_errors_get_one_attempt(make_orch):
    orch = make_orch(max_retries=3)
    task = orch.wait_for(_submit(orch, "invalid"), timeout=5)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 1
    assert task.error.startswith("ValidationFailedError")


def test_attempt_timeout_fails_the_task(make_orch):
    orch = make_orch(task_timeout=0.2, max_retries=1)
    seen = _events(orch)
    start = time.monotonic()

    task = orch.wait_for(_submit(orch, "sleep:2"), timeout=5)

    assert time.monotonic() - start < 1.5
    assert task.status == TaskStatus.FAILED
    assert "timed out" in task.error
    assert seen[-1][1] == TaskEventType.FAILED


def test_no_agent_bound_fails_the_task(tmp_path):
    orch = _orchestrator(tmp_path, bind=False)
    try:
        task = orch.wait_for(orch.submit("research it", TaskKind.RESEARCH), timeout=5)
        assert task.status == TaskStatus.FAILED
        assert task.error == "No agent bound for task kind research"
    finally:
        orch.shutdown()


# ---------------------------------------------------------------------------
# Control
# ---------------------------------------------------------------------------

def test_cancel_semantics(make_orch):
    orch = make_orch(max_concurrent_tasks=1)
    seen = _events(orch)
    running = _submit(orch, "wait")
    pending = _submit(orch, "ok")

    assert orch.cancel(pending)
    assert orch.cancel(pending)
    assert not orch.cancel(running)
    assert not orch.cancel("task-unknown")
    assert orch.get_task(pending).status == TaskStatus.CANCELLED
    assert (pending, TaskEventType.CANCELLED) in seen

    orch.get_agent("scripted").gate.set()
    orch.wait_for(running, timeout=5)
    assert not orch.cancel(running)
    assert pending not in orch.get_agent("scripted").calls


def test_progress_reports(make_orch):
    orch = make_orch(max_concurrent_tasks=1)
    running = _submit(orch, "wait")
    reports = []
    unsubscribe = orch.on_task_progress(running, lambda pct, msg: reports.append((pct, msg)))

    orch.report_progress(running, 150, "over")
    orch.report_progress(running, -5)
    unsubscribe()
    orch.report_progress(running, 10, "unheard")

    assert (100, "over") in reports
    assert (0, "") in reports
    assert (10, "unheard") not in reports
    with pytest.raises(NotFoundError):
        orch.report_progress("task-unknown", 1)


def test_progress_for_finished_task_is_dropped(make_orch):
    orch = make_orch()
    task_id = _submit(orch, "ok")
    orch.wait_for(task_id, timeout=5)
    reports = []
    orch.on_task_progress(task_id, lambda pct, msg: reports.append(pct))
    orch.report_progress(task_id, 99)
    assert reports == []


def test_wait_for(make_orch):
    orch = make_orch()
    with pytest.raises(NotFoundError):
        orch.wait_for("task-unknown")
    running = _submit(orch, "wait")
    with pytest.raises(AttemptTimeoutError):
        orch.wait_for(running, timeout=0.05)


def test_get_task_returns_a_copy(make_orch):
    orch = make_orch()
    task_id = _submit(orch, "ok")
    orch.wait_for(task_id, timeout=5)
    copy = orch.get_task(task_id)
    copy.error = "tampered"
    assert orch.get_task(task_id).error is None
    with pytest.raises(NotFoundError):
        orch.get_task("task-unknown")


def test_shutdown_cancels_pending_and_refuses_new_work(make_orch):
    orch = make_orch(max_concurrent_tasks=1)
    running = _submit(orch, "sleep:0.2")
    pending = _submit(orch, "ok")

    orch.shutdown()

    assert orch.get_task(running).status == TaskStatus.COMPLETED
    assert orch.get_task(pending).status == TaskStatus.CANCELLED
    assert orch.get_task(pending).error == "Orchestrator shut down"
    with pytest.raises(BuildCrewError):
        _submit(orch, "ok")
    orch.shutdown()


def test_stats(make_orch):
    orch = make_orch()
    orch.wait_for(_submit(orch, "ok"), timeout=5)
    orch.wait_for(_submit(orch, "fail"), timeout=5)
    stats = orch.stats()
    assert stats["tasks"]["completed"] == 1
    assert stats["tasks"]["failed"] == 1
    assert stats["in_flight"] == 0


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

def test_default_binding_follows_agent_kind(make_orch):
    orch = make_orch(bind=False)
    coder = orch.register_agent(AgentConfig(id="coder", name="Coder", kind="coder"))
    assert isinstance(coder, CoderAgent)
    assert orch._agent_for(TaskKind.CODE_GENERATION) is coder
    assert orch._agent_for(TaskKind.RTL) is coder
    assert orch._agent_for(TaskKind.TESTING) is None
    with pytest.raises(NotFoundError):
        orch.get_agent("nobody")


def test_replacing_an_agent_shuts_down_the_old_one(make_orch):
    orch = make_orch()
    old = orch.get_agent("scripted")
    orch.register_agent(AgentConfig(id="scripted", name="Scripted", kind="scripted"),
                        task_kinds=[TaskKind.CODE_GENERATION])
    assert old.state.value == "shut_down"
    assert orch.get_agent("scripted") is not old


def test_retry_after_replacement_goes_to_the_new_agent(make_orch):
    orch = make_orch(max_retries=3)
    old = orch.get_agent("scripted")
    task_id = _submit(orch, "stall")
    deadline = time.monotonic() + 5
    while old.running == 0 and time.monotonic() < deadline:
        time.sleep(0.01)

    new = orch.register_agent(AgentConfig(id="scripted", name="Scripted", kind="scripted"),
                              task_kinds=[TaskKind.CODE_GENERATION])
    new.gate.set()
    old.gate.set()
    task = orch.wait_for(task_id, timeout=5)

    assert task.status == TaskStatus.COMPLETED
    assert task.attempts == 2
    assert old.calls == [task_id]
    assert new.calls == [task_id]


def test_shut_down_agent_is_not_retried(make_orch):
    orch = make_orch(max_retries=3)
    orch.get_agent("scripted").shutdown()

    task = orch.wait_for(_submit(orch, "ok"), timeout=5)

    assert task.status == TaskStatus.FAILED
    assert task.attempts == 1
    assert "AgentShutdownError" in task.error
