"""
🔎 Researcher — Query, Search, Synthesize

Turns a task into a handful of search queries, runs them through the
web-search and documentation-lookup tools, scores every hit for
relevance and source credibility, and synthesizes the lot.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from buildcrew.agents import AgentRun, BaseAgent
from buildcrew.models import Artifact, ArtifactType, TaskResult

MAX_QUERIES = 3

HIGH_CREDIBILITY = ("github.com", "docs.python.org", "developer.mozilla.org", "nodejs.org")
MEDIUM_CREDIBILITY = ("stackoverflow.com", "medium.com", "dev.to")

SourceType = Literal["official", "documentation", "stackoverflow", "blog", "tutorial", "other"]


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class ResearchQueries(BaseModel):
    queries: list[str] = Field(min_length=1)


class Finding(BaseModel):
    title: str
    description: str
    relevance: float
    source: str
    url: str = ""


class Source(BaseModel):
    name: str
    url: str = ""
    type: SourceType = "other"
    credibility: float = 0.5


class QuerySummary(BaseModel):
    summary: str
    recommendations: list[str] = Field(default_factory=list)
    confidence: float = 0.5


class QueryResearch(BaseModel):
    query: str
    findings: list[Finding] = Field(default_factory=list)
    sources: list[Source] = Field(default_factory=list)
    summary: str = ""
    recommendations: list[str] = Field(default_factory=list)
    confidence: float = 0.0


class Synthesis(BaseModel):
    overall_summary: str
    key_insights: list[str] = Field(default_factory=list)
    actionable_recommendations: list[str] = Field(default_factory=list)
    knowledge_gaps: list[str] = Field(default_factory=list)
    confidence_score: float = 0.5


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def relevance(query: str, title: str, description: str) -> float:
    """Share of query terms that occur in the title or description."""
    terms = [t for t in query.lower().split() if t]
    if not terms:
        return 0.0
    text = f"{title} {description}".lower()
    return min(sum(1 for t in terms if t in text) / len(terms), 1.0)


def credibility(source: str) -> float:
    if any(domain in source for domain in HIGH_CREDIBILITY):
        return 0.9
    if any(domain in source for domain in MEDIUM_CREDIBILITY):
        return 0.7
    return 0.5


def source_type(url: str) -> SourceType:
    if "stackoverflow.com" in url:
        return "stackoverflow"
    if "github.com" in url:
        return "official"
    if "docs." in url or "/docs/" in url:
        return "documentation"
    if "blog." in url or "/blog/" in url:
        return "blog"
    if "tutorial" in url or "guide" in url:
        return "tutorial"
    return "other"


def _hits(output: Any) -> list[dict[str, Any]]:
    if not isinstance(output, dict):
        return []
    return [h for h in output.get("results", []) if isinstance(h, dict)]


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class ResearcherAgent(BaseAgent):
    system_prompt = """You are the research analyst of a build crew.

You extract precise search queries, summarize findings and give
actionable recommendations.

You MUST respond with a valid JSON object ONLY. No markdown, no commentary.
"""

    def _fallback_queries(self, run: AgentRun) -> ResearchQueries:
        kind = run.task.kind.value
        keywords = run.task.description.lower().split()[:3]
        return ResearchQueries(queries=[
            f"Best practices for {kind}",
            f"How to implement {' '.join(keywords)}",
            f"Common issues with {kind}",
        ])

    def _search(self, run: AgentRun, query: str) -> QueryResearch:
        research = QueryResearch(query=query)

        result = self.use_tool(run, "web-search", {"query": query, "num": 5}, target=query)
        if result and result.success:
            for hit in _hits(result.output):
                title = str(hit.get("title") or hit.get("name") or "Untitled")
                description = str(hit.get("snippet") or hit.get("description") or "No description available")
                url = str(hit.get("url") or "")
                host = str(hit.get("source") or hit.get("host_name") or url or "Unknown")
                research.findings.append(Finding(
                    title=title, description=description, url=url, source=host,
                    relevance=relevance(query, title, description),
                ))
                research.sources.append(Source(name=host, url=url, type=source_type(url), credibility=credibility(host)))

        result = self.use_tool(run, "documentation-lookup", {"topic": query, "num": 3}, target=query)
        if result and result.success:
            for hit in _hits(result.output):
                title = str(hit.get("title") or "Documentation")
                description = str(hit.get("content") or hit.get("description") or "No content available")
                url = str(hit.get("url") or "")
                name = str(hit.get("source") or "Documentation")
                research.findings.append(Finding(
                    title=title, description=description, url=url, source=name,
                    relevance=relevance(query, title, description),
                ))
                research.sources.append(Source(name=name, url=url, type="documentation", credibility=0.9))

        summary = self._summarize(run, research)
        return research.model_copy(update=summary.model_dump())

    def _summarize(self, run: AgentRun, research: QueryResearch) -> QuerySummary:
        if not research.findings:
            return QuerySummary(
                summary=f"No relevant information found for query: {research.query}",
                recommendations=["Try refining the search query", "Check official documentation"],
                confidence=0.0,
            )

        findings = "\n".join(f"- {f.title}: {f.description} (relevance {f.relevance:.2f})" for f in research.findings)
        sources = "\n".join(f"- {s.name} ({s.type}, credibility {s.credibility:.2f})" for s in research.sources)
        return self.request_or_fallback(
            run,
            f"""Query: {research.query}

Findings:
{findings}

Sources:
{sources}

Respond with JSON: {{"summary": "...", "recommendations": [], "confidence": 0.0-1.0}}""",
            QuerySummary,
            lambda: self._fallback_summary(research),
        )

    @staticmethod
    def _fallback_summary(research: QueryResearch) -> QuerySummary:
        top = sorted(research.findings, key=lambda f: f.relevance, reverse=True)[:3]
        average = sum(f.relevance for f in research.findings) / len(research.findings)
        return QuerySummary(
            summary=(
                f'Research for "{research.query}" found {len(research.findings)} results. '
                f"Top findings: {', '.join(f.title for f in top)}."
            ),
            recommendations=[
                "Review the most relevant findings first",
                "Check official documentation for authoritative information",
            ],
            confidence=min(average, 1.0),
        )

    @staticmethod
    def _fallback_synthesis(run: AgentRun, results: list[QueryResearch]) -> Synthesis:
        findings = sum(len(r.findings) for r in results)
        sources = sum(len(r.sources) for r in results)
        confidence = sum(r.confidence for r in results) / len(results) if results else 0.0
        recommendations = list(dict.fromkeys(rec for r in results for rec in r.recommendations))
        return Synthesis(
            overall_summary=(
                f'Research completed for "{run.task.description}" with '
                f"{findings} findings from {sources} sources."
            ),
            key_insights=[
                f"Research covered {len(results)} queries",
                f"Average confidence score: {confidence:.2f}",
            ],
            actionable_recommendations=recommendations[:5],
            knowledge_gaps=["Real-world implementation examples", "Performance considerations"],
            confidence_score=confidence,
        )

    def on_execute(self, run: AgentRun) -> TaskResult:
        task = run.task
        queries = self.request_or_fallback(
            run,
            f"""Task: {task.description}
Kind: {task.kind.value}
Files: {', '.join(f.path for f in run.files) or 'none'}

Extract up to {MAX_QUERIES} specific search queries.
Respond with JSON: {{"queries": ["..."]}}""",
            ResearchQueries,
            lambda: self._fallback_queries(run),
        ).queries[:MAX_QUERIES]

        results: list[QueryResearch] = []
        for i, query in enumerate(queries):
            run.report(int(10 + 70 * i / len(queries)), f"Researching: {query}")
            self.log.info(f"[{self.tag}] Query {i + 1}/{len(queries)}: {query}")
            results.append(self._search(run, query))

        run.report(85, "Synthesizing")
        digest = "\n\n".join(
            f"Query: {r.query}\nSummary: {r.summary}\nConfidence: {r.confidence:.2f}\n"
            f"Recommendations: {', '.join(r.recommendations)}"
            for r in results
        )
        synthesis = self.request_or_fallback(
            run,
            f"""Task: {task.description}

Research results:
{digest}

Respond with JSON: {{"overall_summary": "...", "key_insights": [], "actionable_recommendations": [],
"knowledge_gaps": [], "confidence_score": 0.0-1.0}}""",
            Synthesis,
            lambda: self._fallback_synthesis(run, results),
        )

        return self.create_task_result(
            True,
            output={
                "queries": queries,
                "research": [r.model_dump() for r in results],
                "synthesis": synthesis.model_dump(),
                "degraded": run.degraded,
            },
            artifacts=[Artifact(
                type=ArtifactType.REPORT,
                path=f"research_{task.id}.json",
                metadata={
                    "task_id": task.id,
                    "queries": len(queries),
                    "findings": sum(len(r.findings) for r in results),
                    "sources": sum(len(r.sources) for r in results),
                },
            )],
        )
