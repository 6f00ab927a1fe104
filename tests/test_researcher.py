import json

import pytest

from buildcrew.agents.researcher import ResearcherAgent, credibility, relevance, source_type
from buildcrew.models import ArtifactType, TaskKind
from buildcrew.tooling import ToolRegistry

from conftest import GARBAGE, FakeBackend, make_agent, make_router, make_task, system_of

WEB_HITS = [
    {"title": "httpx retries", "url": "https://github.com/encode/httpx", "snippet": "Retry transport for async clients"},
    {"title": "Backoff answer", "url": "https://stackoverflow.com/q/1", "snippet": "Use exponential backoff"},
]
DOC_HITS = [{"title": "asyncio", "url": "https://docs.python.org/3/library/asyncio.html", "snippet": "Event loop"}]


def _responder(request):
    system = system_of(request)
    if "search engine" in system:
        return json.dumps(WEB_HITS)
    if "documentation index" in system:
        return json.dumps(DOC_HITS)
    return GARBAGE


def test_research_collects_findings_per_query(tmp_path, request):
    router = make_router(FakeBackend(responder=_responder))
    tools = ToolRegistry(working_directory=tmp_path, router=router)
    request.addfinalizer(tools.shutdown)
    agent = make_agent(ResearcherAgent, router, tools, "researcher", ["web-search", "documentation-lookup"])

    result = agent.execute(make_task(TaskKind.RESEARCH, "async http client retries"))

    assert result.success
    assert len(result.output["queries"]) == 3
    assert result.output["queries"][1] == "How to implement async http client"
    research = result.output["research"]
    assert all(len(r["findings"]) == 3 for r in research)
    web_source = research[0]["sources"][0]
    assert web_source["type"] == "official"
    assert web_source["credibility"] == 0.9
    assert research[0]["sources"][1]["credibility"] == 0.7
    assert research[0]["sources"][2]["type"] == "documentation"
    assert result.artifacts[0].type == ArtifactType.REPORT
    assert result.artifacts[0].metadata["findings"] == 9
    assert "9 findings from 9 sources" in result.output["synthesis"]["overall_summary"]
    assert result.metrics.tool_calls == 6


def test_research_without_tools_reports_no_findings(router, tools):
    agent = make_agent(ResearcherAgent, router, tools, "researcher")
    result = agent.execute(make_task(TaskKind.RESEARCH, "anything"))

    assert result.success
    for r in result.output["research"]:
        assert r["findings"] == []
        assert r["confidence"] == 0.0
        assert r["summary"].startswith("No relevant information found")
    assert result.output["synthesis"]["confidence_score"] == 0.0


def test_scoring_helpers():
    assert relevance("async retries", "Retries", "for async code") == 1.0
    assert relevance("async retries", "Unrelated", "text") == 0.0
    assert relevance("", "a", "b") == 0.0
    assert credibility("docs.python.org") == 0.9
    assert credibility("dev.to") == 0.7
    assert credibility("example.com") == 0.5
    assert source_type("https://blog.example.com/post") == "blog"
    assert source_type("https://example.com/guide") == "tutorial"


@pytest.mark.parametrize("reply", ['{"queries": []}', '{"queries": "one"}'])
def test_invalid_queries_fall_back(tools, reply):
    router = make_router(FakeBackend(responder=lambda r: reply))
    agent = make_agent(ResearcherAgent, router, tools, "researcher")
    result = agent.execute(make_task(TaskKind.RESEARCH, "caching layer"))
    assert result.output["queries"][0] == "Best practices for research"
    assert result.output["degraded"] is True
