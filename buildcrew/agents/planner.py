"""
🧭 Planner — Execution Plans

Breaks a task into agent-sized steps with explicit dependencies.
Validates the plan (agents, tools, dependency ids, cycles), orders it
topologically and estimates duration from its parallel levels.
Never writes code. Only plans.
"""

from __future__ import annotations

import json
from typing import Literal

from pydantic import BaseModel, Field

from buildcrew.agents import AgentRun, BaseAgent
from buildcrew.models import AgentKind, Artifact, ArtifactType, TaskResult, agent_kind_for


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class TaskAnalysis(BaseModel):
    complexity: Literal["low", "medium", "high"] = "medium"
    estimated_duration: int = 30  # minutes
    required_skills: list[str] = Field(default_factory=list)
    required_tools: list[str] = Field(default_factory=list)
    potential_risks: list[str] = Field(default_factory=list)
    success_criteria: list[str] = Field(default_factory=list)


class PlanStep(BaseModel):
    id: str
    description: str
    agent: str
    tools: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    estimated_duration: int = 5
    priority: Literal["low", "medium", "high", "critical"] = "medium"


class PlanResources(BaseModel):
    agents: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)


class ExecutionPlan(BaseModel):
    steps: list[PlanStep]
    estimated_total_duration: int = 30
    critical_path: list[str] = Field(default_factory=list)
    parallel_groups: list[list[str]] = Field(default_factory=list)
    resources: PlanResources = Field(default_factory=PlanResources)


COMPLEXITY_BY_KIND = {
    "code-generation": "medium",
    "testing": "low",
    "packaging": "low",
    "security": "high",
    "rtl": "high",
    "documentation": "low",
}


# ---------------------------------------------------------------------------
# Plan algebra
# ---------------------------------------------------------------------------

def find_cycle(steps: list[PlanStep]) -> list[str] | None:
    """Return one dependency cycle as a list of step ids, or None."""
    graph = {s.id: s.dependencies for s in steps}
    visiting: list[str] = []
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        if node in done or node not in graph:
            return None
        visiting.append(node)
        for dep in graph[node]:
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for step in steps:
        cycle = visit(step.id)
        if cycle:
            return cycle
    return None


def validate_plan(plan: ExecutionPlan, available_tools: set[str]) -> list[str]:
    errors: list[str] = []
    if not plan.steps:
        errors.append("Plan must have at least one step")

    known_agents = {k.value for k in AgentKind}
    ids = [s.id for s in plan.steps]
    if len(ids) != len(set(ids)):
        errors.append("Plan has duplicate step ids")

    for step in plan.steps:
        if step.agent not in known_agents:
            errors.append(f"Invalid agent specified: {step.agent}")
        for tool in step.tools:
            if tool not in available_tools:
                errors.append(f"Tool not available: {tool}")
        for dep in step.dependencies:
            if dep not in ids:
                errors.append(f"Invalid dependency: {step.id} depends on non-existent step {dep}")

    cycle = find_cycle(plan.steps)
    if cycle:
        errors.append(f"Plan contains circular dependencies: {' -> '.join(cycle)}")
    return errors


def topological_sort(steps: list[PlanStep]) -> list[PlanStep]:
    """Kahn's algorithm, keeping the original order among ready steps."""
    remaining = {s.id: len(s.dependencies) for s in steps}
    ordered: list[PlanStep] = []
    ready = [s for s in steps if remaining[s.id] == 0]
    while ready:
        current = ready.pop(0)
        ordered.append(current)
        for step in steps:
            if current.id in step.dependencies:
                remaining[step.id] -= 1
                if remaining[step.id] == 0:
                    ready.append(step)
    return ordered


def parallel_levels(steps: list[PlanStep]) -> list[list[PlanStep]]:
    """Group steps by dependency depth. Steps in one level never depend on each other."""
    level: dict[str, int] = {}
    for step in topological_sort(steps):
        level[step.id] = 1 + max((level[d] for d in step.dependencies if d in level), default=-1)
    groups: list[list[PlanStep]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
    for step in steps:
        groups[level[step.id]].append(step)
    return groups


def critical_path(steps: list[PlanStep]) -> list[str]:
    """Longest chain of estimated durations through the dependency graph."""
    by_id = {s.id: s for s in steps}
    best: dict[str, tuple[int, list[str]]] = {}
    for step in topological_sort(steps):
        prior = max((best[d] for d in step.dependencies if d in best), key=lambda b: b[0], default=(0, []))
        best[step.id] = (prior[0] + by_id[step.id].estimated_duration, prior[1] + [step.id])
    if not best:
        return []
    return max(best.values(), key=lambda b: b[0])[1]


def optimize_plan(plan: ExecutionPlan) -> ExecutionPlan:
    groups = parallel_levels(plan.steps)
    return plan.model_copy(update={
        "steps": topological_sort(plan.steps),
        "parallel_groups": [[s.id for s in g] for g in groups],
        "estimated_total_duration": sum(max(s.estimated_duration for s in g) for g in groups if g),
        "critical_path": critical_path(plan.steps),
    })


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class PlannerAgent(BaseAgent):
    system_prompt = """You are the planning engine of a build crew.

Your job is to take a development task and produce a precise, actionable plan.

You MUST respond with a valid JSON object ONLY. No markdown, no commentary.

Rules:
- Each step is executed by exactly one agent: planner, researcher, coder, tester,
  packager, reviewer, security, dx-writer.
- Only use tools from the list you are given.
- Dependencies reference earlier step ids. No cycles.
- Keep steps minimal. Fewer steps = fewer failures.
"""

    def _available_tools(self, run: AgentRun) -> list[str]:
        if run.task.context and run.task.context.environment.available_tools:
            return list(run.task.context.environment.available_tools)
        return [t.name for t in self.tools.get_tool_configs()]

    def _fallback_analysis(self, run: AgentRun) -> TaskAnalysis:
        kind = run.task.kind.value
        return TaskAnalysis(
            complexity=COMPLEXITY_BY_KIND.get(kind, "medium"),
            estimated_duration=30,
            required_skills=[kind],
            required_tools=self._available_tools(run)[:3],
            potential_risks=["Unknown dependencies"],
            success_criteria=["Task completed successfully"],
        )

    def _fallback_plan(self, run: AgentRun, analysis: TaskAnalysis) -> ExecutionPlan:
        agent = agent_kind_for(run.task.kind).value
        step = PlanStep(
            id="step1",
            description=f"Execute {run.task.kind.value} task: {run.task.description}",
            agent=agent,
            tools=analysis.required_tools[:2],
            estimated_duration=analysis.estimated_duration,
            priority=run.task.priority.value,
        )
        return ExecutionPlan(
            steps=[step],
            estimated_total_duration=analysis.estimated_duration,
            critical_path=["step1"],
            resources=PlanResources(agents=[agent], tools=analysis.required_tools),
        )

    def on_execute(self, run: AgentRun) -> TaskResult:
        task = run.task
        tools = self._available_tools(run)

        repo_state = ""
        status = self.use_tool(run, "git-status", {}, target="repository")
        if status and status.success:
            changes = status.output.get("changes", [])
            repo_state = "\nUncommitted changes:\n" + "\n".join(changes[:30]) if changes else ""

        files = "\n".join(f"- {f.path} ({f.language})" for f in run.files) or "- none provided"
        run.report(10, "Analyzing task")
        analysis = self.request_or_fallback(
            run,
            f"""Task: {task.description}
Kind: {task.kind.value}
Priority: {task.priority.value}
Files:
{files}
Available tools: {', '.join(tools)}{repo_state}

Respond with JSON: {{"complexity": "low|medium|high", "estimated_duration": minutes,
"required_skills": [], "required_tools": [], "potential_risks": [], "success_criteria": []}}""",
            TaskAnalysis,
            lambda: self._fallback_analysis(run),
        )

        run.report(40, "Generating plan")
        plan = self.request_or_fallback(
            run,
            f"""Task: {task.description}
Analysis: {analysis.model_dump_json()}
Available tools: {', '.join(tools)}

Respond with JSON: {{"steps": [{{"id": "step1", "description": "...", "agent": "coder",
"tools": [], "dependencies": [], "estimated_duration": 5, "priority": "medium"}}],
"estimated_total_duration": minutes, "critical_path": [], "resources": {{"agents": [], "tools": []}}}}""",
            ExecutionPlan,
            lambda: self._fallback_plan(run, analysis),
        )

        run.report(70, "Validating plan")
        errors = validate_plan(plan, set(tools))
        if errors:
            self.log.warning(f"[{self.tag}] Plan rejected: {errors}")
            return self.create_task_result(False, output={"plan": plan.model_dump(), "analysis": analysis.model_dump()}, errors=errors)

        plan = optimize_plan(plan)
        self.log.info(
            f"[{self.tag}] Plan ready — {len(plan.steps)} steps, "
            f"{len(plan.parallel_groups)} levels, ~{plan.estimated_total_duration} min"
        )
        run.report(100, "Plan ready")

        return self.create_task_result(
            True,
            output={
                "plan": plan.model_dump(),
                "analysis": analysis.model_dump(),
                "degraded": run.degraded,
                "applications": [a.model_dump() for a in run.applications],
            },
            artifacts=[Artifact(
                type=ArtifactType.PLAN,
                path=f"plan_{task.id}.json",
                metadata={
                    "task_id": task.id,
                    "steps": len(plan.steps),
                    "estimated_duration": plan.estimated_total_duration,
                    "plan": json.loads(plan.model_dump_json()),
                },
            )],
        )
