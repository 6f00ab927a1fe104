"""
🔒 Security — Secrets, SAST, Dependencies

Three scans feed one finding list:
  - secret: pattern scan of file contents (secret-scanner for files on disk)
  - sast: regex rules, then one model review per file
  - dependency: dependency-check over the manifests in scope

Findings roll up into a vulnerability score, a posture, per-standard
compliance and a risk assessment. Critical findings fail the task
when fail_on_critical is set.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Literal

from pydantic import BaseModel, Field

from buildcrew.agents import AgentRun, BaseAgent
from buildcrew.indexer import MANIFEST_FILES
from buildcrew.models import Artifact, ArtifactType, TaskResult, new_id
from buildcrew.tooling import scan_text_for_secrets

Severity = Literal["low", "medium", "high", "critical"]
ScanType = Literal["dependency", "secret", "sast"]

SEVERITY_PENALTY = {"critical": 20, "high": 10, "medium": 5, "low": 2}

SECRET_SEVERITY = {"private-key": "critical", "aws-access-key": "critical"}

# (rule id, pattern, severity, category, cwe, remediation)
SAST_RULES = [
    ("eval-call", re.compile(r"\beval\s*\("), "high", "injection", "CWE-95",
     "Avoid eval on untrusted input"),
    ("exec-call", re.compile(r"(?<![.\w])exec\s*\("), "high", "injection", "CWE-95",
     "Avoid exec on untrusted input"),
    ("shell-true", re.compile(r"shell\s*=\s*True"), "high", "injection", "CWE-78",
     "Pass an argument list and drop shell=True"),
    ("os-system", re.compile(r"\bos\.system\s*\("), "medium", "injection", "CWE-78",
     "Use subprocess with an argument list"),
    ("pickle-load", re.compile(r"\bpickle\.loads?\s*\("), "high", "data", "CWE-502",
     "Never unpickle untrusted data"),
    ("yaml-load", re.compile(r"\byaml\.load\s*\((?![^)]*Loader)"), "medium", "data", "CWE-502",
     "Use yaml.safe_load"),
    ("weak-hash", re.compile(r"\b(?:md5|sha1)\s*\("), "medium", "crypto", "CWE-327",
     "Use SHA-256 or stronger"),
    ("inner-html", re.compile(r"\.innerHTML\s*="), "medium", "injection", "CWE-79",
     "Use textContent or sanitize the markup"),
    ("sql-concat", re.compile(r"(?i)(?:execute|query)\s*\(\s*[\"'](?:SELECT|INSERT|UPDATE|DELETE)[^\"']*[\"']\s*(?:\+|%|\.format)"),
     "high", "injection", "CWE-89", "Use parameterized queries"),
    ("tls-verify-off", re.compile(r"verify\s*=\s*False"), "medium", "network", "CWE-295",
     "Keep TLS certificate verification on"),
]


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class SecurityRequest(BaseModel):
    target_files: list[str] = Field(default_factory=list)
    scan_types: list[ScanType] = Field(default_factory=lambda: ["dependency", "secret", "sast"])
    severity: Severity = "medium"
    compliance_standards: list[str] = Field(default_factory=lambda: ["OWASP"])
    fail_on_critical: bool = True


class VulnerabilitySpec(BaseModel):
    category: str = "weakness"
    severity: Severity = "medium"
    line: int | None = None
    code: str | None = None
    description: str
    cwe: str | None = None
    remediation: str = ""


class ModelSastReport(BaseModel):
    vulnerabilities: list[VulnerabilitySpec] = Field(default_factory=list)


class SecurityFinding(BaseModel):
    id: str = Field(default_factory=lambda: new_id("sec"))
    type: Literal["vulnerability", "secret", "misconfiguration", "weakness"]
    severity: Severity
    category: str
    title: str
    description: str = ""
    file: str
    line: int | None = None
    cwe: str | None = None
    remediation: str = ""
    source: Literal["rule", "model", "tool"] = "rule"


class SecurityMetrics(BaseModel):
    total: int
    critical: int
    high: int
    medium: int
    low: int
    vulnerability_score: int
    posture: Literal["excellent", "good", "fair", "poor", "critical"]


class ComplianceStandard(BaseModel):
    name: str
    score: int
    status: Literal["compliant", "partial", "non-compliant"]


class RiskAssessment(BaseModel):
    overall_risk: Literal["low", "medium", "high", "critical"]
    factors: list[str]
    mitigation: list[str]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def _counts(findings: list[SecurityFinding]) -> dict[str, int]:
    return {s: sum(1 for f in findings if f.severity == s) for s in SEVERITY_PENALTY}


def vulnerability_score(findings: list[SecurityFinding]) -> int:
    return max(0, 100 - sum(SEVERITY_PENALTY[f.severity] for f in findings))


def security_metrics(findings: list[SecurityFinding]) -> SecurityMetrics:
    c = _counts(findings)
    if c["critical"]:
        posture = "critical"
    elif c["high"] > 2:
        posture = "poor"
    elif c["high"] or c["medium"] > 5:
        posture = "fair"
    elif c["medium"]:
        posture = "good"
    else:
        posture = "excellent"
    return SecurityMetrics(
        total=len(findings), critical=c["critical"], high=c["high"], medium=c["medium"], low=c["low"],
        vulnerability_score=vulnerability_score(findings), posture=posture,
    )


def compliance(findings: list[SecurityFinding], standards: list[str]) -> list[ComplianceStandard]:
    # Every finding counts against every standard
    score = vulnerability_score(findings)
    status = "compliant" if score >= 90 else "partial" if score >= 70 else "non-compliant"
    return [ComplianceStandard(name=s, score=score, status=status) for s in standards]


def risk_assessment(metrics: SecurityMetrics) -> RiskAssessment:
    if metrics.critical:
        risk = "critical"
    elif metrics.high > 2:
        risk = "high"
    elif metrics.high or metrics.medium > 5:
        risk = "medium"
    else:
        risk = "low"
    mitigation = []
    if metrics.critical:
        mitigation.append(f"Fix {metrics.critical} critical finding(s) before release")
    if metrics.high:
        mitigation.append(f"Schedule fixes for {metrics.high} high-severity finding(s)")
    if not mitigation:
        mitigation.append("Keep scanning on every change")
    return RiskAssessment(
        overall_risk=risk,
        factors=[f"{metrics.total} security finding(s), vulnerability score {metrics.vulnerability_score}"],
        mitigation=mitigation,
    )


def sast_rules(path: str, content: str) -> list[SecurityFinding]:
    findings = []
    for rule_id, pattern, severity, category, cwe, remediation in SAST_RULES:
        for match in pattern.finditer(content):
            findings.append(SecurityFinding(
                type="vulnerability" if severity in ("high", "critical") else "weakness",
                severity=severity, category=category, title=f"{rule_id} ({cwe})",
                file=path, line=content.count("\n", 0, match.start()) + 1,
                cwe=cwe, remediation=remediation,
            ))
    return findings


def meets(severity: str, threshold: str) -> bool:
    order = list(SEVERITY_PENALTY)[::-1]
    return order.index(severity) >= order.index(threshold)


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class SecurityAgent(BaseAgent):
    system_prompt = """You are the security guard of a build crew.

You look for injection vectors, unsafe deserialization, weak crypto,
missing input validation and hardcoded credentials.

Be thorough but don't false-positive on idiomatic patterns.
Severity must be honest. Don't inflate.

You MUST respond with a valid JSON object ONLY. No markdown, no commentary.
"""

    def _secrets(self, run: AgentRun, targets: dict[str, str | None]) -> list[SecurityFinding]:
        raw = []
        for path, content in targets.items():
            if content is not None:
                raw.extend(scan_text_for_secrets(content, path))
        on_disk = [p for p, c in targets.items() if c is None]
        if on_disk:
            result = self.use_tool(run, "secret-scanner", {"target_files": on_disk}, target=", ".join(on_disk))
            if result and result.success:
                raw.extend(result.output.get("secrets", []))
        return [
            SecurityFinding(
                type="secret", severity=SECRET_SEVERITY.get(s["type"], "high"), category="secret",
                title=f"Hardcoded {s['type']}", description=f"Matched {s['match']}",
                file=s["file"], line=s.get("line"), cwe="CWE-798",
                remediation="Move the value to an environment variable or secret store", source="tool",
            )
            for s in raw
        ]

    def _sast(self, run: AgentRun, path: str, content: str) -> list[SecurityFinding]:
        findings = sast_rules(path, content)
        report = self.request_or_fallback(
            run,
            f"""Static security review.

File: {path}
Rule hits so far: {', '.join(f'{f.title} line {f.line}' for f in findings) or 'none'}

```
{content}
```

Respond with JSON: {{"vulnerabilities": [{{"category": "injection|auth|crypto|data|config|network",
"severity": "low|medium|high|critical", "line": 1, "code": "...", "description": "...",
"cwe": "CWE-79", "remediation": "..."}}]}}""",
            ModelSastReport,
            ModelSastReport,
        )
        seen = {(f.line, f.cwe) for f in findings}
        for v in report.vulnerabilities:
            if (v.line, v.cwe) in seen:
                continue
            findings.append(SecurityFinding(
                type="vulnerability", severity=v.severity, category=v.category,
                title=f"{v.category} ({v.cwe or 'no CWE'})", description=v.description,
                file=path, line=v.line, cwe=v.cwe, remediation=v.remediation, source="model",
            ))
        return findings

    def _dependencies(self, run: AgentRun, manifests: list[str], severity: str) -> list[SecurityFinding]:
        if not manifests:
            return []
        result = self.use_tool(run, "dependency-check", {"target_files": manifests, "severity": severity},
                               target=", ".join(manifests))
        if result is None or not result.success:
            return []
        return [
            SecurityFinding(
                type="misconfiguration", severity=v["severity"], category="dependency",
                title=f"{v['package']}: {v['message']}", file=v["file"],
                remediation="Pin the dependency to a reviewed version", source="tool",
            )
            for v in result.output.get("vulnerabilities", [])
        ]

    def on_execute(self, run: AgentRun) -> TaskResult:
        task = run.task
        request = self.request_or_fallback(
            run,
            f"""Task: {task.description}
Files: {', '.join(f.path for f in run.files) or 'none'}

Respond with JSON: {{"target_files": [], "scan_types": ["dependency", "secret", "sast"],
"severity": "low|medium|high|critical", "compliance_standards": ["OWASP"], "fail_on_critical": true}}""",
            SecurityRequest,
            lambda: SecurityRequest(target_files=[f.path for f in run.files]),
        )

        contents = {f.path: f.content for f in run.files}
        targets: dict[str, str | None] = {p: contents.get(p) for p in request.target_files}

        findings: list[SecurityFinding] = []
        if "secret" in request.scan_types:
            run.report(20, "Scanning for secrets")
            findings.extend(self._secrets(run, targets))
        if "sast" in request.scan_types:
            for i, (path, content) in enumerate(targets.items()):
                if content:
                    run.report(int(30 + 40 * i / max(len(targets), 1)), f"Analyzing {path}")
                    findings.extend(self._sast(run, path, content))
        if "dependency" in request.scan_types:
            run.report(75, "Checking dependencies")
            manifests = [p for p in targets if PurePosixPath(p).name in MANIFEST_FILES]
            findings.extend(self._dependencies(run, manifests, request.severity))

        reported = [f for f in findings if meets(f.severity, request.severity)]
        metrics = security_metrics(reported)
        standards = compliance(reported, request.compliance_standards)
        risk = risk_assessment(metrics)

        self.log.info(
            f"[{self.tag}] Posture: {metrics.posture} — {metrics.total} findings, "
            f"score {metrics.vulnerability_score}"
        )

        output = {
            "request": request.model_dump(),
            "findings": [f.model_dump() for f in reported],
            "metrics": metrics.model_dump(),
            "compliance": [s.model_dump() for s in standards],
            "risk": risk.model_dump(),
            "applications": [a.model_dump() for a in run.applications],
            "degraded": run.degraded,
        }
        artifacts = [Artifact(
            type=ArtifactType.REPORT,
            path=f"security_report_{task.id}.json",
            metadata={"posture": metrics.posture, "score": metrics.vulnerability_score,
                      "findings": metrics.total, "critical": metrics.critical},
        )]

        if request.fail_on_critical and metrics.critical:
            errors = [f"Critical: {f.title} in {f.file}:{f.line or '?'}" for f in reported if f.severity == "critical"]
            return self.create_task_result(False, output=output, errors=errors, artifacts=artifacts)
        return self.create_task_result(True, output=output, artifacts=artifacts)
