"""
BUILDCREW Agent Factory

Maps an agent kind to its strategy class and hands back an
initialized agent wired to the shared router, tools and memory.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from buildcrew.agents import BaseAgent
from buildcrew.agents.coder import CoderAgent
from buildcrew.agents.dx_writer import DXWriterAgent
from buildcrew.agents.packager import PackagerAgent
from buildcrew.agents.planner import PlannerAgent
from buildcrew.agents.researcher import ResearcherAgent
from buildcrew.agents.reviewer import ReviewerAgent
from buildcrew.agents.security import SecurityAgent
from buildcrew.agents.tester import TesterAgent
from buildcrew.errors import ConfigurationError
from buildcrew.models import AgentConfig, AgentKind

if TYPE_CHECKING:
    from buildcrew.memory import MemoryManager
    from buildcrew.router import ModelRouter
    from buildcrew.tooling import ToolRegistry

DEFAULT_STRATEGIES: dict[str, type[BaseAgent]] = {
    AgentKind.PLANNER.value: PlannerAgent,
    AgentKind.RESEARCHER.value: ResearcherAgent,
    AgentKind.CODER.value: CoderAgent,
    AgentKind.TESTER.value: TesterAgent,
    AgentKind.PACKAGER.value: PackagerAgent,
    AgentKind.REVIEWER.value: ReviewerAgent,
    AgentKind.SECURITY.value: SecurityAgent,
    AgentKind.DX_WRITER.value: DXWriterAgent,
}

_missing = {k.value for k in AgentKind} - set(DEFAULT_STRATEGIES)
if _missing:
    raise RuntimeError(f"Agent kinds without a strategy: {sorted(_missing)}")


class AgentFactory:
    def __init__(
        self,
        router: "ModelRouter",
        tools: "ToolRegistry",
        memory: "MemoryManager | None" = None,
    ):
        self.router = router
        self.tools = tools
        self.memory = memory
        self._strategies: dict[str, type[BaseAgent]] = dict(DEFAULT_STRATEGIES)

    def register_strategy(self, kind: str | AgentKind, cls: type[BaseAgent]) -> None:
        """Add or replace the strategy for a kind."""
        key = kind.value if isinstance(kind, AgentKind) else kind
        if not (isinstance(cls, type) and issubclass(cls, BaseAgent)):
            raise ConfigurationError(f"Strategy for {key!r} must subclass BaseAgent")
        self._strategies[key] = cls
        logger.debug(f"[FACTORY] Strategy registered: {key} -> {cls.__name__}")

    def kinds(self) -> list[str]:
        return list(self._strategies)

    def create_agent(self, config: AgentConfig) -> BaseAgent:
        cls = self._strategies.get(config.kind)
        if cls is None:
            raise ConfigurationError(f"Unknown agent kind: {config.kind}")
        agent = cls(config, self.router, self.tools, self.memory)
        agent.initialize()
        logger.info(f"[FACTORY] Created {config.name} ({config.kind})")
        return agent
