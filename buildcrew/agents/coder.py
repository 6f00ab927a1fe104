"""
🔧 Coder — Generation & Modification

One model call per target file. Existing files come back as a
unified diff against the original; new files are written whole.
Everything is linted before it touches the workspace.
"""

from __future__ import annotations

import difflib
import re
from typing import Literal

from pydantic import BaseModel, Field

from buildcrew.agents import AgentRun, BaseAgent, detect_language, dominant_language, strip_code_fences
from buildcrew.indexer import LANGUAGE_BY_EXTENSION
from buildcrew.models import Artifact, ArtifactType, FileContext, TaskResult


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class FileSpec(BaseModel):
    path: str
    purpose: str = "General purpose"


class CodeRequest(BaseModel):
    description: str
    language: str
    framework: str | None = None
    files: list[FileSpec] = Field(default_factory=list)
    requirements: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)


class Dependency(BaseModel):
    name: str
    version: str = "latest"
    type: Literal["runtime", "dev", "peer"] = "runtime"
    reason: str = "Required for functionality"


class DependencyList(BaseModel):
    dependencies: list[Dependency] = Field(default_factory=list)


class GeneratedFile(BaseModel):
    path: str
    content: str
    language: str
    purpose: str
    lines: int


class ModifiedFile(BaseModel):
    path: str
    original_content: str
    new_content: str
    diff: str
    added: int
    removed: int
    reason: str


class Instruction(BaseModel):
    command: str
    description: str


class CodeQuality(BaseModel):
    lint_issues: int = 0
    lint_errors: int = 0
    files_changed: int = 0
    lines_changed: int = 0
    score: float = 1.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def unified_diff(path: str, original: str, modified: str) -> tuple[str, int, int]:
    """Diff text plus added/removed line counts."""
    lines = list(difflib.unified_diff(
        original.splitlines(keepends=True),
        modified.splitlines(keepends=True),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
    ))
    added = sum(1 for l in lines if l.startswith("+") and not l.startswith("+++"))
    removed = sum(1 for l in lines if l.startswith("-") and not l.startswith("---"))
    return "".join(lines), added, removed


def extension_for(language: str) -> str:
    for ext, lang in LANGUAGE_BY_EXTENSION.items():
        if lang == language:
            return ext
    return ".txt"


def _slug(text: str) -> str:
    words = re.findall(r"[a-z0-9]+", text.lower())[:4]
    return "_".join(words) or "generated"


def build_instructions(language: str, framework: str | None) -> list[Instruction]:
    if language in ("javascript", "typescript"):
        what = "the React application" if framework == "react" else "the application"
        return [
            Instruction(command="npm install", description="Install dependencies"),
            Instruction(command="npm run build", description=f"Build {what}"),
        ]
    if language == "python":
        return [Instruction(command="pip install -e .", description="Install the package and its dependencies")]
    if language == "rust":
        return [Instruction(command="cargo build", description="Build the crate")]
    if language == "go":
        return [Instruction(command="go build ./...", description="Build all packages")]
    return []


def test_instructions(language: str) -> list[Instruction]:
    commands = {
        "javascript": "npm test",
        "typescript": "npm test",
        "python": "python -m pytest",
        "rust": "cargo test",
        "go": "go test ./...",
    }
    command = commands.get(language)
    return [Instruction(command=command, description="Run the test suite")] if command else []


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class CoderAgent(BaseAgent):
    system_prompt = """You are the implementation engine of a build crew.

When asked for a request object, reply with a valid JSON object ONLY.
When asked for a file, reply with the complete file content ONLY.
No explanations. No placeholders. Preserve existing behavior you were not
asked to change.
"""

    def _fallback_request(self, run: AgentRun) -> CodeRequest:
        language = dominant_language(run.files)
        files = [FileSpec(path=f.path, purpose="Existing file to be modified") for f in run.files]
        if not files:
            files = [FileSpec(path=f"{_slug(run.task.description)}{extension_for(language)}",
                              purpose=run.task.description)]
        return CodeRequest(
            description=run.task.description,
            language=language,
            files=files,
            requirements=["Implement the requested functionality", "Follow best practices"],
            constraints=["Must work with existing codebase"],
        )

    def _generate(self, run: AgentRun, spec: FileSpec, request: CodeRequest) -> GeneratedFile:
        language = detect_language(spec.path)
        if language == "text":
            language = request.language
        content = strip_code_fences(self.ask(run, f"""Create a new {language} file.

Path: {spec.path}
Purpose: {spec.purpose}
Task: {request.description}
Framework: {request.framework or 'none'}

Requirements:
{chr(10).join(f'- {r}' for r in request.requirements)}

Constraints:
{chr(10).join(f'- {c}' for c in request.constraints)}

Reply with the complete file content."""))
        return GeneratedFile(
            path=spec.path, content=content, language=language,
            purpose=spec.purpose, lines=len(content.splitlines()),
        )

    def _modify(self, run: AgentRun, spec: FileSpec, existing: FileContext, request: CodeRequest) -> ModifiedFile:
        content = strip_code_fences(self.ask(run, f"""Modify the existing file.

Path: {spec.path}
Purpose: {spec.purpose}
Task: {request.description}

Current content:
```{existing.language}
{existing.content}
```

Requirements:
{chr(10).join(f'- {r}' for r in request.requirements)}

Reply with the complete modified file content."""))
        diff, added, removed = unified_diff(spec.path, existing.content, content)
        return ModifiedFile(
            path=spec.path, original_content=existing.content, new_content=content,
            diff=diff, added=added, removed=removed, reason=spec.purpose,
        )

    def _lint(self, run: AgentRun, path: str, content: str, language: str) -> list[dict]:
        result = self.use_tool(run, "lint-runner", {"file_path": path, "content": content, "language": language}, target=path)
        if result is None or not isinstance(result.output, dict):
            return []
        return list(result.output.get("issues", []))

    def on_execute(self, run: AgentRun) -> TaskResult:
        task = run.task
        request = self.request_or_fallback(
            run,
            f"""Task: {task.description}
Files in context:
{chr(10).join(f'- {f.path} ({f.language})' for f in run.files) or '- none'}

Respond with JSON: {{"description": "...", "language": "python", "framework": null,
"files": [{{"path": "...", "purpose": "..."}}], "requirements": [], "constraints": []}}""",
            CodeRequest,
            lambda: self._fallback_request(run),
        )

        existing = {f.path: f for f in run.files}
        generated: list[GeneratedFile] = []
        modified: list[ModifiedFile] = []
        for i, spec in enumerate(request.files):
            run.report(int(10 + 60 * i / max(len(request.files), 1)), f"Writing {spec.path}")
            if spec.path in existing:
                modified.append(self._modify(run, spec, existing[spec.path], request))
            else:
                generated.append(self._generate(run, spec, request))

        dependencies = self.request_or_fallback(
            run,
            f"""Language: {request.language}
Framework: {request.framework or 'none'}
Task: {request.description}
Files: {', '.join(s.path for s in request.files)}

List only the dependencies this change needs.
Respond with JSON: {{"dependencies": [{{"name": "...", "version": "...", "type": "runtime|dev|peer", "reason": "..."}}]}}""",
            DependencyList,
            DependencyList,
        ).dependencies

        run.report(75, "Linting")
        errors: list[str] = []
        if not generated and not modified:
            errors.append("No files were generated or modified")

        issues = 0
        lint_errors = 0
        for path, content, language in (
            [(g.path, g.content, g.language) for g in generated]
            + [(m.path, m.new_content, existing[m.path].language) for m in modified]
        ):
            found = self._lint(run, path, content, language)
            issues += len(found)
            failing = [i for i in found if i.get("severity") == "error"]
            lint_errors += len(failing)
            if failing:
                errors.append(f"Linting failed for {path}: {', '.join(sorted({i['message'] for i in failing}))}")

        changed_lines = sum(g.lines for g in generated) + sum(m.added + m.removed for m in modified)
        files_changed = len(generated) + len(modified)
        quality = CodeQuality(
            lint_issues=issues,
            lint_errors=lint_errors,
            files_changed=files_changed,
            lines_changed=changed_lines,
            score=round(max(0.0, 1.0 - 0.1 * issues / max(files_changed, 1)), 2),
        )

        output = {
            "request": request.model_dump(),
            "generated_files": [g.model_dump() for g in generated],
            "modified_files": [m.model_dump() for m in modified],
            "dependencies": [d.model_dump() for d in dependencies],
            "build_instructions": [b.model_dump() for b in build_instructions(request.language, request.framework)],
            "test_instructions": [t.model_dump() for t in test_instructions(request.language)],
            "quality": quality.model_dump(),
            "degraded": run.degraded,
        }

        if errors:
            self.log.warning(f"[{self.tag}] Code validation failed: {errors}")
            return self.create_task_result(False, output=output, errors=errors)

        run.report(90, "Applying changes")
        for g in generated:
            self.use_tool(run, "file-write", {"path": g.path, "content": g.content}, target=g.path)
        for m in modified:
            self.use_tool(run, "file-write", {"path": m.path, "content": m.new_content}, target=m.path)
        output["applications"] = [a.model_dump() for a in run.applications]

        self.log.info(f"[{self.tag}] {len(generated)} created, {len(modified)} modified, {changed_lines} lines")
        artifacts = [
            Artifact(type=ArtifactType.FILE, path=g.path,
                     metadata={"language": g.language, "lines": g.lines, "purpose": g.purpose})
            for g in generated
        ] + [
            Artifact(type=ArtifactType.FILE, path=m.path,
                     metadata={"modified": True, "added": m.added, "removed": m.removed, "reason": m.reason})
            for m in modified
        ]
        return self.create_task_result(True, output=output, artifacts=artifacts)
