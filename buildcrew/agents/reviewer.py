"""
🔍 Reviewer — Findings & Scores

Reviews each target file with one model call. When a reply can't be
parsed, the lint-runner's issues stand in as findings. Findings roll
up into per-category scores, a weighted overall score and a short
list of prioritized recommendations.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from buildcrew.agents import AgentRun, BaseAgent, detect_language
from buildcrew.errors import DegradedParseError
from buildcrew.models import Artifact, ArtifactType, TaskResult, new_id

Severity = Literal["low", "medium", "high", "critical"]
Category = Literal["code-quality", "security", "performance", "maintainability", "documentation"]

CATEGORY_WEIGHTS: dict[str, float] = {
    "code-quality": 0.3,
    "security": 0.25,
    "performance": 0.2,
    "maintainability": 0.15,
    "documentation": 0.1,
}

PENALTY_PER_ISSUE = 10


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class ReviewRequest(BaseModel):
    target_files: list[str] = Field(default_factory=list)
    review_type: Literal["code", "architecture", "security", "performance", "documentation"] = "code"
    focus: list[str] = Field(default_factory=list)
    standards: list[str] = Field(default_factory=list)
    auto_fix: bool = False


class FindingSpec(BaseModel):
    type: Literal["issue", "warning", "suggestion", "best-practice"] = "issue"
    severity: Severity = "medium"
    category: Category = "code-quality"
    title: str
    description: str = ""
    line: int | None = None
    code: str | None = None
    suggestion: str = ""
    confidence: float = 0.8
    auto_fixable: bool = False


class FileFindings(BaseModel):
    findings: list[FindingSpec] = Field(default_factory=list)


class Finding(FindingSpec):
    id: str
    file: str


class Recommendation(BaseModel):
    priority: Literal["immediate", "short-term", "long-term"]
    category: str
    description: str
    effort: Literal["low", "medium", "high"]
    findings: list[str]


class CodeFix(BaseModel):
    fixed_code: str


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def category_scores(findings: list[Finding]) -> dict[str, int]:
    """100 per category, minus a flat penalty per finding, floored at zero."""
    scores = {}
    for category in CATEGORY_WEIGHTS:
        count = sum(1 for f in findings if f.category == category)
        scores[category] = max(0, 100 - PENALTY_PER_ISSUE * count)
    return scores


def overall_score(scores: dict[str, int]) -> int:
    return round(sum(scores[c] * w for c, w in CATEGORY_WEIGHTS.items()))


def recommendations_for(findings: list[Finding]) -> list[Recommendation]:
    by_category: dict[str, list[Finding]] = {}
    for f in findings:
        by_category.setdefault(f.category, []).append(f)

    recs = []
    for category, group in by_category.items():
        if any(f.severity == "critical" for f in group):
            priority, effort = "immediate", "high"
        elif any(f.severity == "high" for f in group):
            priority, effort = "short-term", "medium"
        else:
            priority, effort = "long-term", "low"
        recs.append(Recommendation(
            priority=priority,
            category=category,
            description=f"Address {len(group)} {category} issue(s)",
            effort=effort,
            findings=[f.id for f in group],
        ))
    order = {"immediate": 0, "short-term": 1, "long-term": 2}
    return sorted(recs, key=lambda r: order[r.priority])


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class ReviewerAgent(BaseAgent):
    system_prompt = """You are the code reviewer of a build crew.

You give specific, actionable findings with line numbers. You do not
nitpick formatting a linter would catch.

You MUST respond with a valid JSON object ONLY. No markdown, no commentary.
"""

    def _lint_findings(self, run: AgentRun, path: str, content: str) -> FileFindings:
        result = self.use_tool(run, "lint-runner",
                               {"file_path": path, "content": content, "language": detect_language(path)},
                               target=path)
        if result is None or not isinstance(result.output, dict):
            return FileFindings()
        return FileFindings(findings=[
            FindingSpec(
                type="issue" if issue.get("severity") == "error" else "warning",
                severity="high" if issue.get("severity") == "error" else "low",
                category="code-quality",
                title=str(issue.get("message", "Lint issue")),
                line=issue.get("line"),
                confidence=1.0,
            )
            for issue in result.output.get("issues", [])
        ])

    def _review_file(self, run: AgentRun, path: str, content: str, request: ReviewRequest) -> list[Finding]:
        specs = self.request_or_fallback(
            run,
            f"""Review this file ({request.review_type} review).

File: {path}
Focus: {', '.join(request.focus) or 'general'}
Standards: {', '.join(request.standards) or 'none'}

```
{content}
```

Respond with JSON: {{"findings": [{{"type": "issue|warning|suggestion|best-practice",
"severity": "low|medium|high|critical",
"category": "code-quality|security|performance|maintainability|documentation",
"title": "...", "description": "...", "line": 1, "code": "...", "suggestion": "...",
"confidence": 0.8, "auto_fixable": false}}]}}""",
            FileFindings,
            lambda: self._lint_findings(run, path, content),
        )
        return [Finding(id=new_id("finding"), file=path, **s.model_dump()) for s in specs.findings]

    def _fix(self, run: AgentRun, finding: Finding) -> dict | None:
        try:
            fix = self.ask_json(run, f"""Fix this issue.

Finding: {finding.title}
File: {finding.file}
Line: {finding.line}
Code:
```
{finding.code}
```
Suggestion: {finding.suggestion}

Respond with JSON: {{"fixed_code": "..."}}""", CodeFix)
        except DegradedParseError as e:
            self.log.warning(f"[{self.tag}] No usable fix for {finding.id}: {e}")
            return None
        risk = {"critical": "high", "high": "medium"}.get(finding.severity, "low")
        return {
            "finding_id": finding.id,
            "file": finding.file,
            "original_code": finding.code,
            "fixed_code": fix.fixed_code,
            "risk": risk,
        }

    def on_execute(self, run: AgentRun) -> TaskResult:
        task = run.task
        request = self.request_or_fallback(
            run,
            f"""Task: {task.description}
Files: {', '.join(f.path for f in run.files) or 'none'}

Respond with JSON: {{"target_files": [], "review_type": "code|architecture|security|performance|documentation",
"focus": [], "standards": [], "auto_fix": false}}""",
            ReviewRequest,
            lambda: ReviewRequest(target_files=[f.path for f in run.files], focus=["code-quality"]),
        )

        contents = {f.path: f.content for f in run.files}
        findings: list[Finding] = []
        reviewed = 0
        for i, path in enumerate(request.target_files):
            content = contents.get(path)
            if content is None:
                read = self.use_tool(run, "file-read", {"path": path}, target=path)
                content = read.output["content"] if read and read.success else None
            if not content:
                continue
            run.report(int(10 + 70 * i / max(len(request.target_files), 1)), f"Reviewing {path}")
            findings.extend(self._review_file(run, path, content, request))
            reviewed += 1

        scores = category_scores(findings)
        score = overall_score(scores)
        recommendations = recommendations_for(findings)
        severity_counts = {s: sum(1 for f in findings if f.severity == s) for s in ("critical", "high", "medium", "low")}

        fixes = []
        if request.auto_fix:
            for finding in findings:
                if finding.auto_fixable and finding.code:
                    fix = self._fix(run, finding)
                    if fix:
                        fixes.append(fix)

        summary = (
            f"Reviewed {reviewed} file(s): {len(findings)} finding(s) "
            f"({severity_counts['critical']} critical, {severity_counts['high']} high). "
            f"Overall score {score}/100."
        )
        self.log.info(f"[{self.tag}] {summary}")

        return self.create_task_result(
            True,
            output={
                "request": request.model_dump(),
                "findings": [f.model_dump() for f in findings],
                "scores": scores,
                "score": score,
                "severity_counts": severity_counts,
                "recommendations": [r.model_dump() for r in recommendations],
                "fixes": fixes,
                "summary": summary,
                "degraded": run.degraded,
            },
            artifacts=[Artifact(
                type=ArtifactType.REPORT,
                path=f"review_report_{task.id}.json",
                metadata={"review_type": request.review_type, "score": score,
                          "findings": len(findings), "critical": severity_counts["critical"]},
            )],
        )
