import json

import pytest

from buildcrew.agents import AgentRun, AgentState, BaseAgent, dominant_language, strip_code_fences
from buildcrew.agents.factory import AgentFactory
from buildcrew.agents.planner import (
    ExecutionPlan,
    PlannerAgent,
    PlanStep,
    critical_path,
    find_cycle,
    optimize_plan,
    parallel_levels,
    validate_plan,
)
from buildcrew.errors import (
    AgentNotInitializedError,
    AgentShutdownError,
    ConfigurationError,
    DegradedParseError,
)
from buildcrew.models import AgentConfig, ArtifactType, FileContext, TaskKind

from conftest import FakeBackend, make_agent, make_router, make_task, prompt_of


class EchoAgent(BaseAgent):
    def on_execute(self, run: AgentRun):
        run.report(50, "halfway")
        reply = self.ask(run, run.task.description)
        return self.create_task_result(True, output=reply)


def _echo(router, tools):
    return EchoAgent(AgentConfig(id="echo", name="Echo", kind="coder"), router, tools)


# ---------------------------------------------------------------------------
# Base lifecycle
# ---------------------------------------------------------------------------

def test_execute_requires_initialize(router, tools):
    agent = _echo(router, tools)
    with pytest.raises(AgentNotInitializedError):
        agent.execute(make_task(TaskKind.CODE_GENERATION))


def test_execute_after_shutdown_is_refused(router, tools):
    agent = _echo(router, tools)
    agent.initialize()
    agent.shutdown()
    assert agent.state == AgentState.SHUT_DOWN
    with pytest.raises(AgentShutdownError):
        agent.execute(make_task(TaskKind.CODE_GENERATION))
    with pytest.raises(AgentShutdownError):
        agent.initialize()


def test_initialize_is_idempotent(router, tools):
    agent = _echo(router, tools)
    agent.initialize()
    agent.initialize()
    assert agent.state == AgentState.INITIALIZED


def test_execute_stamps_metrics_and_reports_progress(tools):
    router = make_router(FakeBackend(responder=lambda r: "pong", tokens=12))
    agent = _echo(router, tools)
    agent.initialize()
    seen = []

    result = agent.execute(make_task(TaskKind.CODE_GENERATION, "ping"), lambda pct, msg: seen.append((pct, msg)))

    assert result.success
    assert result.output == "pong"
    assert result.metrics.tokens_used == 12
    assert result.metrics.cost == pytest.approx(12 * 0.001)
    assert seen == [(50, "halfway")]


def test_ask_json_raises_on_garbage(router, tools):
    agent = _echo(router, tools)
    agent.initialize()
    run = AgentRun(task=make_task(TaskKind.PLANNING))
    with pytest.raises(DegradedParseError):
        agent.ask_json(run, "anything", ExecutionPlan)


def test_use_tool_requires_permission(router, tools):
    agent = _echo(router, tools)
    run = AgentRun(task=make_task(TaskKind.CODE_GENERATION))
    assert agent.use_tool(run, "file-read", {"path": "x"}) is None
    assert run.tool_calls == 0


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences("plain") == "plain"


def test_dominant_language():
    files = [FileContext(path="a.ts"), FileContext(path="b.ts"), FileContext(path="c.py")]
    assert dominant_language(files) == "typescript"
    assert dominant_language([]) == "python"


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def test_factory_creates_initialized_agents(router, tools):
    factory = AgentFactory(router, tools)
    agent = factory.create_agent(AgentConfig(id="p", name="Planner", kind="planner"))
    assert isinstance(agent, PlannerAgent)
    assert agent.state == AgentState.INITIALIZED


def test_factory_rejects_unknown_kind(router, tools):
    with pytest.raises(ConfigurationError):
        AgentFactory(router, tools).create_agent(AgentConfig(id="x", name="X", kind="astrologer"))


def test_factory_strategy_must_subclass_base_agent(router, tools):
    factory = AgentFactory(router, tools)
    with pytest.raises(ConfigurationError):
        factory.register_strategy("coder", dict)
    factory.register_strategy("echo", EchoAgent)
    assert isinstance(factory.create_agent(AgentConfig(id="e", name="E", kind="echo")), EchoAgent)


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------

def _step(id, deps=(), duration=5, agent="coder"):
    return PlanStep(id=id, description=id, agent=agent, dependencies=list(deps), estimated_duration=duration)


def test_planner_falls_back_to_single_step_plan(router, tools):
    agent = make_agent(PlannerAgent, router, tools, "planner")
    seen = []
    result = agent.execute(make_task(TaskKind.TESTING, "cover the parser"), lambda p, m: seen.append(p))

    assert result.success
    plan = result.output["plan"]
    assert [s["agent"] for s in plan["steps"]] == ["tester"]
    assert result.output["degraded"] is True
    assert result.artifacts[0].type == ArtifactType.PLAN
    assert seen == [10, 40, 70, 100]
    assert any(e.action == "fallback_request" for e in result.audit_log)


def test_planner_orders_scripted_plan(tools):
    plan = {"steps": [
        {"id": "docs", "description": "write docs", "agent": "dx-writer", "dependencies": ["code"], "estimated_duration": 3},
        {"id": "code", "description": "write code", "agent": "coder", "estimated_duration": 10},
        {"id": "tests", "description": "write tests", "agent": "tester", "dependencies": ["code"], "estimated_duration": 4},
    ]}

    def responder(request):
        return json.dumps(plan) if "Analysis:" in prompt_of(request) else '{"complexity": "low"}'

    router = make_router(FakeBackend(responder=responder))
    agent = make_agent(PlannerAgent, router, tools, "planner")
    result = agent.execute(make_task(TaskKind.PLANNING, "ship a feature"))

    out = result.output["plan"]
    assert [s["id"] for s in out["steps"]] == ["code", "docs", "tests"]
    assert out["parallel_groups"] == [["code"], ["docs", "tests"]]
    assert out["estimated_total_duration"] == 14
    assert out["critical_path"] == ["code", "tests"]
    assert result.output["degraded"] is False


def test_planner_rejects_cyclic_plan(tools):
    plan = {"steps": [
        {"id": "a", "description": "a", "agent": "coder", "dependencies": ["b"]},
        {"id": "b", "description": "b", "agent": "coder", "dependencies": ["a"]},
    ]}
    router = make_router(FakeBackend(responder=lambda r: json.dumps(plan)))
    agent = make_agent(PlannerAgent, router, tools, "planner")

    result = agent.execute(make_task(TaskKind.PLANNING))

    assert not result.success
    assert any("circular" in e for e in result.errors)


def test_validate_plan_lists_every_problem():
    plan = ExecutionPlan(steps=[
        PlanStep(id="a", description="a", agent="wizard", tools=["magic"], dependencies=["ghost"]),
    ])
    errors = validate_plan(plan, {"file-read"})
    assert "Invalid agent specified: wizard" in errors
    assert "Tool not available: magic" in errors
    assert "Invalid dependency: a depends on non-existent step ghost" in errors
    assert validate_plan(ExecutionPlan(steps=[]), set()) == ["Plan must have at least one step"]


def test_plan_algebra():
    steps = [_step("a", duration=2), _step("b", ["a"], 7), _step("c", ["a"], 1), _step("d", ["b", "c"], 1)]
    assert find_cycle(steps) is None
    assert [[s.id for s in g] for g in parallel_levels(steps)] == [["a"], ["b", "c"], ["d"]]
    assert critical_path(steps) == ["a", "b", "d"]
    assert optimize_plan(ExecutionPlan(steps=steps)).estimated_total_duration == 10
    assert find_cycle([_step("x", ["y"]), _step("y", ["x"])]) in (["x", "y", "x"], ["y", "x", "y"])
