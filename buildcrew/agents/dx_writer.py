"""
📝 DX Writer — Documentation

Writes one document per task, one model call per section, then parses
the assembled markdown back into a section tree to check structure,
collect code examples and score the result.
"""

from __future__ import annotations

import math
import re
from typing import Literal

from pydantic import BaseModel, Field

from buildcrew.agents import AgentRun, BaseAgent, strip_code_fences
from buildcrew.models import Artifact, ArtifactType, TaskResult

DocType = Literal["readme", "api", "user-guide", "developer-guide", "architecture", "changelog"]

WORDS_PER_MINUTE = 200

DEFAULT_SECTIONS: dict[str, list[str]] = {
    "readme": ["Overview", "Installation", "Usage", "Configuration", "Contributing"],
    "api": ["Overview", "Reference", "Examples", "Errors"],
    "user-guide": ["Getting Started", "Common Tasks", "Troubleshooting"],
    "developer-guide": ["Architecture", "Development Setup", "Testing", "Release Process"],
    "architecture": ["Context", "Components", "Data Flow", "Decisions"],
    "changelog": ["Unreleased"],
}

DOC_PATHS: dict[str, tuple[str, str]] = {
    "readme": ("README.md", "README"),
    "api": ("docs/API.md", "API Reference"),
    "user-guide": ("docs/USER_GUIDE.md", "User Guide"),
    "developer-guide": ("docs/DEVELOPER_GUIDE.md", "Developer Guide"),
    "architecture": ("docs/ARCHITECTURE.md", "Architecture"),
    "changelog": ("CHANGELOG.md", "Changelog"),
}

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_CODE_BLOCK_RE = re.compile(r"```(\w+)?\n(.*?)```", re.DOTALL)
_SENTENCE_RE = re.compile(r"[.!?]+(?:\s|$)")


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class DocRequest(BaseModel):
    target_files: list[str] = Field(default_factory=list)
    doc_type: DocType = "readme"
    audience: Literal["developers", "users", "administrators", "stakeholders"] = "developers"
    style: Literal["technical", "friendly", "formal", "casual"] = "technical"
    include_examples: bool = True
    sections: list[str] = Field(default_factory=list)


class CodeExample(BaseModel):
    language: str
    code: str


class Section(BaseModel):
    id: str
    title: str
    level: int
    content: str = ""
    subsections: list["Section"] = Field(default_factory=list)


class DocQuality(BaseModel):
    completeness: float
    examples: float
    readability: float
    overall: float


# ---------------------------------------------------------------------------
# Markdown analysis
# ---------------------------------------------------------------------------

def slugify(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


def parse_sections(markdown: str) -> list[Section]:
    """Heading tree. Fenced code is skipped so `# comment` lines aren't headings."""
    roots: list[Section] = []
    stack: list[Section] = []
    in_code = False
    for line in markdown.splitlines():
        if line.strip().startswith("```"):
            in_code = not in_code
        match = None if in_code else _HEADING_RE.match(line)
        if match:
            section = Section(id=slugify(match.group(2)), title=match.group(2), level=len(match.group(1)))
            while stack and stack[-1].level >= section.level:
                stack.pop()
            (stack[-1].subsections if stack else roots).append(section)
            stack.append(section)
        elif stack:
            stack[-1].content += line + "\n"
    return roots


def flatten(sections: list[Section]) -> list[Section]:
    out = []
    for s in sections:
        out.append(s)
        out.extend(flatten(s.subsections))
    return out


def code_examples(markdown: str) -> list[CodeExample]:
    return [CodeExample(language=m.group(1) or "text", code=m.group(2).strip()) for m in _CODE_BLOCK_RE.finditer(markdown)]


def reading_time(markdown: str) -> int:
    """Minutes at WORDS_PER_MINUTE, at least one."""
    return max(1, math.ceil(len(markdown.split()) / WORDS_PER_MINUTE))


def score_document(markdown: str, wanted: list[str], include_examples: bool) -> DocQuality:
    titles = {s.title.lower() for s in flatten(parse_sections(markdown))}
    completeness = sum(1 for w in wanted if w.lower() in titles) / len(wanted) if wanted else 1.0

    if include_examples:
        examples = 1.0 if code_examples(markdown) else 0.0
    else:
        examples = 1.0

    prose = _CODE_BLOCK_RE.sub("", markdown)
    sentences = max(len(_SENTENCE_RE.findall(prose)), 1)
    words_per_sentence = len(prose.split()) / sentences
    readability = 1.0 if words_per_sentence <= 20 else round(20 / words_per_sentence, 2)

    overall = round((completeness + examples + readability) / 3, 2)
    return DocQuality(completeness=round(completeness, 2), examples=examples, readability=readability, overall=overall)


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class DXWriterAgent(BaseAgent):
    system_prompt = """You are the documentation writer of a build crew.

You write clear, accurate markdown for the stated audience. Prefer short
sentences and concrete examples. Never invent APIs that are not in the
source you were given.
"""

    MIN_QUALITY = 0.5

    def _write_section(self, run: AgentRun, title: str, request: DocRequest, sources: str) -> str:
        body = strip_code_fences(self.ask(run, f"""Write the "{title}" section of a {request.doc_type}.

Audience: {request.audience}
Style: {request.style}
Include code examples: {'yes' if request.include_examples else 'no'}
Task: {run.task.description}

Source files:
{sources or 'none provided'}

Reply with the section body in markdown, without the "{title}" heading itself.
Use ### for any subsections."""))
        return f"## {title}\n\n{body.strip()}\n"

    def on_execute(self, run: AgentRun) -> TaskResult:
        task = run.task
        request = self.request_or_fallback(
            run,
            f"""Task: {task.description}
Files: {', '.join(f.path for f in run.files) or 'none'}

Respond with JSON ONLY: {{"target_files": [], "doc_type": "readme|api|user-guide|developer-guide|architecture|changelog",
"audience": "developers|users|administrators|stakeholders", "style": "technical|friendly|formal|casual",
"include_examples": true, "sections": []}}""",
            DocRequest,
            lambda: DocRequest(target_files=[f.path for f in run.files]),
        )
        wanted = request.sections or DEFAULT_SECTIONS[request.doc_type]
        path, title = DOC_PATHS[request.doc_type]

        contents = {f.path: f.content for f in run.files}
        sources = "\n\n".join(
            f"--- {p} ---\n{contents[p][:4000]}" for p in request.target_files if contents.get(p)
        )

        parts = [f"# {title}\n"]
        for i, section in enumerate(wanted):
            run.report(int(10 + 70 * i / len(wanted)), f"Writing {section}")
            parts.append(self._write_section(run, section, request, sources))
        document = "\n".join(parts)

        sections = parse_sections(document)
        examples = code_examples(document)
        quality = score_document(document, wanted, request.include_examples)
        minutes = reading_time(document)

        errors: list[str] = []
        if len(flatten(sections)) <= 1:
            errors.append(f"Document {path} has no sections")
        if quality.overall < self.MIN_QUALITY:
            errors.append(f"Documentation quality {quality.overall} is below {self.MIN_QUALITY}")

        output = {
            "request": request.model_dump(),
            "document": {"path": path, "title": title, "content": document, "size": len(document),
                         "reading_time": minutes},
            "sections": [s.model_dump() for s in sections],
            "code_examples": [e.model_dump() for e in examples],
            "quality": quality.model_dump(),
            "degraded": run.degraded,
        }
        if errors:
            self.log.warning(f"[{self.tag}] Documentation rejected: {errors}")
            return self.create_task_result(False, output=output, errors=errors)

        self.use_tool(run, "file-write", {"path": path, "content": document}, target=path)
        output["applications"] = [a.model_dump() for a in run.applications]

        self.log.info(f"[{self.tag}] {path}: {len(wanted)} sections, {minutes} min read, quality {quality.overall}")
        return self.create_task_result(
            True,
            output=output,
            artifacts=[Artifact(
                type=ArtifactType.FILE,
                path=path,
                metadata={"doc_type": request.doc_type, "reading_time": minutes,
                          "sections": len(wanted), "quality": quality.overall},
            )],
        )
