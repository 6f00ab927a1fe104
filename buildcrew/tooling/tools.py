"""
BUILDCREW Tools — Execution Strategies

Every tool is one of three strategies behind the same interface:

  - BuiltinTool: a local Python handler (files, shell, scanners)
  - ExternalTool: a command line built from a template in the config
  - ModelTool: a capability answered by the model router (web search)

Strategies report failure through ToolResult. They only raise on bugs.
"""

from __future__ import annotations

import json
import os
import re
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from buildcrew.models import (
    ModelRequest,
    ToolConfig,
    ToolKind,
    ToolParameter,
    ToolResult,
    ValidationRule,
)

if TYPE_CHECKING:
    from buildcrew.router import ModelRouter


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------

@dataclass
class ToolContext:
    """Ambient defaults every tool call starts from. Callers override, never the reverse."""
    working_directory: Path = field(default_factory=Path.cwd)
    environment: dict[str, str] = field(default_factory=dict)

    def resolve(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.working_directory / p


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def run_command(
    command: str | list[str],
    cwd: Path | str,
    env: dict[str, str],
    timeout: float | None,
) -> ToolResult:
    """Run a command and capture everything into a ToolResult."""
    start = time.monotonic()
    try:
        proc = subprocess.run(
            command,
            shell=isinstance(command, str),
            cwd=str(cwd),
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        return ToolResult(
            success=False,
            error=f"Command timed out after {timeout}s",
            stdout=_text(e.stdout),
            stderr=_text(e.stderr),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
    except OSError as e:
        return ToolResult(
            success=False,
            error=str(e),
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    ok = proc.returncode == 0
    return ToolResult(
        success=ok,
        output={"stdout": proc.stdout, "stderr": proc.stderr},
        error=None if ok else f"Command exited with code {proc.returncode}",
        stdout=proc.stdout,
        stderr=proc.stderr,
        exit_code=proc.returncode,
        duration_ms=int((time.monotonic() - start) * 1000),
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class Tool(ABC):
    def __init__(self, config: ToolConfig):
        self.config = config

    @abstractmethod
    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        ...

    def shutdown(self) -> None:
        pass


BuiltinHandler = Callable[[dict[str, Any], ToolContext, ToolConfig], ToolResult]


class BuiltinTool(Tool):
    def __init__(self, config: ToolConfig, handler: BuiltinHandler):
        super().__init__(config)
        self.handler = handler

    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        return self.handler(args, context, self.config)


class ExternalTool(Tool):
    """Fills `config.command` with shell-quoted arguments and runs it."""

    def build_command(self, args: dict[str, Any]) -> str:
        template = self.config.command or self.config.name
        quoted = {k: shlex.quote(v if isinstance(v, str) else json.dumps(v)) for k, v in args.items()}
        return template.format(**quoted)

    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        try:
            command = self.build_command(args)
        except KeyError as e:
            return ToolResult(success=False, error=f"Command template needs argument {e}")
        env = {**os.environ, **context.environment, **self.config.env}
        logger.debug(f"[TOOLS] external {self.config.name}: {command}")
        return run_command(command, context.working_directory, env, self.config.timeout)


class ModelTool(Tool):
    """Answers through the model router. The model must reply with JSON."""

    def __init__(self, config: ToolConfig, router: "ModelRouter"):
        super().__init__(config)
        self.router = router

    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        prompt = MODEL_TOOL_PROMPTS.get(self.config.name)
        if prompt is None:
            return ToolResult(success=False, error=f"Unknown model tool: {self.config.name}")

        start = time.monotonic()
        request = ModelRequest(
            messages=[
                {"role": "system", "content": prompt},
                {"role": "user", "content": json.dumps(args)},
            ],
            temperature=0.0,
            max_tokens=2048,
        )
        response = self.router.generate_response(request)
        elapsed = int((time.monotonic() - start) * 1000)

        content = _strip_fences(response.content)
        try:
            results = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"[TOOLS] {self.config.name} returned non-JSON: {e}")
            return ToolResult(
                success=True,
                output={"results": [], "parse_error": True, "raw_response": content[:1000]},
                duration_ms=elapsed,
            )
        if isinstance(results, dict):
            results = results.get("results", [])
        if not isinstance(results, list):
            results = []
        limit = args.get("num")
        if isinstance(limit, (int, float)):
            results = results[:int(limit)]
        return ToolResult(success=True, output={"results": results}, duration_ms=elapsed)


def _strip_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        content = "\n".join(lines)
    return content


MODEL_TOOL_PROMPTS = {
    "web-search": (
        "You are a search engine. Reply ONLY with a JSON array of results, each "
        '{"title": str, "url": str, "snippet": str}. Return at most `num` results.'
    ),
    "documentation-lookup": (
        "You are a documentation index. Reply ONLY with a JSON array of entries, each "
        '{"title": str, "url": str, "snippet": str} pointing at official documentation '
        "for the given `topic`."
    ),
}


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------

def _file_read(args: dict[str, Any], ctx: ToolContext, config: ToolConfig) -> ToolResult:
    path = ctx.resolve(args["path"])
    try:
        content = path.read_text(encoding=args.get("encoding", "utf-8"))
    except (OSError, UnicodeDecodeError, LookupError) as e:
        return ToolResult(success=False, error=f"Error reading file: {e}")
    return ToolResult(success=True, output={"path": str(path), "content": content, "size": len(content)})


def _file_write(args: dict[str, Any], ctx: ToolContext, config: ToolConfig) -> ToolResult:
    path = ctx.resolve(args["path"])
    try:
        created = not path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(args["content"], encoding=args.get("encoding", "utf-8"))
    except (OSError, LookupError) as e:
        return ToolResult(success=False, error=f"Error writing file: {e}")
    return ToolResult(
        success=True,
        output={"path": str(path), "bytes_written": len(args["content"]), "created": created},
    )


def _merged_env(ctx: ToolContext, config: ToolConfig, caller_env: dict | None) -> dict[str, str]:
    env = {**os.environ, **ctx.environment, **config.env}
    if caller_env:
        env.update({k: str(v) for k, v in caller_env.items()})
    return env


def _shell_exec(args: dict[str, Any], ctx: ToolContext, config: ToolConfig) -> ToolResult:
    cwd = ctx.resolve(args["cwd"]) if args.get("cwd") else ctx.working_directory
    timeout = args.get("timeout") or config.timeout
    logger.debug(f"[TOOLS] shell-exec in {cwd}: {args['command']}")
    return run_command(args["command"], cwd, _merged_env(ctx, config, args.get("env")), timeout)


def _git_status(args: dict[str, Any], ctx: ToolContext, config: ToolConfig) -> ToolResult:
    cwd = ctx.resolve(args["path"]) if args.get("path") else ctx.working_directory
    result = run_command(["git", "status", "--porcelain"], cwd, _merged_env(ctx, config, None), config.timeout)
    if result.success:
        changes = [line for line in result.stdout.splitlines() if line.strip()]
        return result.model_copy(update={"output": {"status": result.stdout.strip(), "changes": changes}})
    return result


JS_LINT_RULES = [
    (re.compile(r"\bvar\s+"), "Use const/let instead of var"),
    (re.compile(r"console\.log\("), "Remove console.log statements"),
    (re.compile(r"[^=!]==[^=]"), "Use === instead of =="),
]


def _lint_runner(args: dict[str, Any], ctx: ToolContext, config: ToolConfig) -> ToolResult:
    content: str = args["content"]
    language: str = args["language"].lower()
    issues: list[dict[str, Any]] = []

    if language == "python":
        try:
            compile(content, args["file_path"], "exec")
        except SyntaxError as e:
            issues.append({"line": e.lineno or 0, "message": f"SyntaxError: {e.msg}", "severity": "error"})
        for lineno, line in enumerate(content.splitlines(), 1):
            if line.rstrip() != line:
                issues.append({"line": lineno, "message": "Trailing whitespace", "severity": "warning"})
    elif language in ("javascript", "typescript"):
        for lineno, line in enumerate(content.splitlines(), 1):
            for pattern, message in JS_LINT_RULES:
                if pattern.search(line):
                    issues.append({"line": lineno, "message": message, "severity": "error"})

    errors = [i for i in issues if i["severity"] == "error"]
    if errors:
        return ToolResult(
            success=False,
            output={"issues": issues},
            error=", ".join(sorted({i["message"] for i in errors})),
        )
    return ToolResult(success=True, output={"issues": issues, "message": "No linting issues found"})


_PASSED_RE = re.compile(r"(\d+)\s+pass(?:ed|ing)")
_FAILED_RE = re.compile(r"(\d+)\s+fail(?:ed|ing|ures?)")


def _test_runner(args: dict[str, Any], ctx: ToolContext, config: ToolConfig) -> ToolResult:
    cwd = ctx.resolve(args["cwd"]) if args.get("cwd") else ctx.working_directory
    result = run_command(args["command"], cwd, _merged_env(ctx, config, None), config.timeout)
    text = result.stdout + "\n" + result.stderr
    passed = sum(int(n) for n in _PASSED_RE.findall(text))
    failed = sum(int(n) for n in _FAILED_RE.findall(text))
    output = {
        "framework": args["framework"],
        "passed": passed,
        "failed": failed,
        "stdout": result.stdout,
        "stderr": result.stderr,
    }
    return result.model_copy(update={"output": output})


SEVERITY_ORDER = {"low": 0, "medium": 1, "high": 2, "critical": 3}

_REQUIREMENT_RE = re.compile(r"^\s*([A-Za-z0-9_.\-\[\]]+)\s*(.*)$")


def _parse_dependencies(path: Path, text: str) -> list[tuple[str, str]]:
    if path.name == "package.json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return []
        deps = {**data.get("dependencies", {}), **data.get("devDependencies", {})}
        return [(name, str(spec)) for name, spec in deps.items()]

    deps = []
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line or line.startswith("-"):
            continue
        match = _REQUIREMENT_RE.match(line)
        if match:
            deps.append((match.group(1), match.group(2).strip()))
    return deps


def _dependency_check(args: dict[str, Any], ctx: ToolContext, config: ToolConfig) -> ToolResult:
    threshold = SEVERITY_ORDER.get(args.get("severity", "medium"), 1)
    dependencies: list[dict[str, str]] = []
    findings: list[dict[str, Any]] = []

    for target in args["target_files"]:
        path = ctx.resolve(target)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.debug(f"[TOOLS] dependency-check skipped {target}: {e}")
            continue
        for name, spec in _parse_dependencies(path, text):
            dependencies.append({"file": target, "name": name, "version": spec})
            if spec in ("*", "latest"):
                severity, message = "high", "Wildcard version accepts any release"
            elif not spec:
                severity, message = "medium", "Unpinned dependency"
            elif spec.startswith((">", "^", "~")) and "<" not in spec:
                severity, message = "low", "Open-ended version range"
            else:
                continue
            if SEVERITY_ORDER[severity] >= threshold:
                findings.append({"file": target, "package": name, "severity": severity, "message": message})

    return ToolResult(
        success=True,
        output={
            "dependencies": dependencies,
            "vulnerabilities": findings,
            "message": f"{len(findings)} dependency issue(s) found",
        },
    )


SECRET_PATTERNS = [
    ("api-key", re.compile(r"(?i)(?:api_key|secret|token|password)\s*[:=]\s*['\"]([a-zA-Z0-9_\-]{16,})['\"]")),
    ("api-key", re.compile(r"(?i)api[_-]?key\s*[:=]\s*['\"]([a-zA-Z0-9]{32,})['\"]")),
    ("password", re.compile(r"(?i)password\s*[:=]\s*['\"]([^'\"\s]{8,})['\"]")),
    ("aws-access-key", re.compile(r"\b(AKIA[0-9A-Z]{16})\b")),
    ("private-key", re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----")),
]


def scan_text_for_secrets(text: str, file: str) -> list[dict[str, Any]]:
    """Pattern-based secret detection. One finding per (line, type)."""
    found: dict[tuple[int, str], dict[str, Any]] = {}
    for kind, pattern in SECRET_PATTERNS:
        for match in pattern.finditer(text):
            line = text.count("\n", 0, match.start()) + 1
            if (line, kind) in found:
                continue
            raw = match.group(0)
            found[(line, kind)] = {
                "file": file,
                "line": line,
                "type": kind,
                "match": raw[:6] + "***" if len(raw) > 6 else "***",
            }
    return sorted(found.values(), key=lambda f: (f["line"], f["type"]))


def _secret_scanner(args: dict[str, Any], ctx: ToolContext, config: ToolConfig) -> ToolResult:
    secrets: list[dict[str, Any]] = []
    for target in args["target_files"]:
        try:
            text = ctx.resolve(target).read_text(encoding="utf-8", errors="ignore")
        except OSError as e:
            logger.debug(f"[TOOLS] secret-scanner skipped {target}: {e}")
            continue
        secrets.extend(scan_text_for_secrets(text, target))
    return ToolResult(success=True, output={"secrets": secrets})


BUILTIN_HANDLERS: dict[str, BuiltinHandler] = {
    "file-read": _file_read,
    "file-write": _file_write,
    "shell-exec": _shell_exec,
    "git-status": _git_status,
    "lint-runner": _lint_runner,
    "test-runner": _test_runner,
    "dependency-check": _dependency_check,
    "secret-scanner": _secret_scanner,
}


# ---------------------------------------------------------------------------
# Default configs
# ---------------------------------------------------------------------------

def _param(name: str, type_: str, description: str, required: bool = False, default: Any = None,
           validation: list[ValidationRule] | None = None) -> ToolParameter:
    return ToolParameter(
        name=name, type=type_, description=description, required=required,
        default=default, validation=validation or [],
    )


_SEVERITY_ENUM = ValidationRule(
    type="enum",
    value=["low", "medium", "high", "critical"],
    message="severity must be one of low, medium, high, critical",
)

DEFAULT_TOOL_CONFIGS: list[ToolConfig] = [
    ToolConfig(
        name="file-read", description="Read a file from the workspace", category="file",
        timeout=10, retryable=True, max_retries=3,
        parameters=[
            _param("path", "string", "File path to read", required=True),
            _param("encoding", "string", "File encoding", default="utf-8"),
        ],
    ),
    ToolConfig(
        name="file-write", description="Write a file into the workspace", category="file",
        timeout=10, retryable=True, max_retries=3,
        parameters=[
            _param("path", "string", "File path to write", required=True),
            _param("content", "string", "Content to write", required=True),
            _param("encoding", "string", "File encoding", default="utf-8"),
        ],
    ),
    ToolConfig(
        name="shell-exec", description="Execute a shell command", category="shell",
        timeout=30, retryable=False,
        parameters=[
            _param("command", "string", "Command to execute", required=True),
            _param("cwd", "string", "Working directory"),
            _param("env", "object", "Extra environment variables"),
            _param("timeout", "number", "Command timeout in seconds",
                   validation=[ValidationRule(type="min", value=0, message="timeout must be >= 0")]),
        ],
    ),
    ToolConfig(
        name="git-status", description="Show working tree changes", category="git",
        timeout=10, retryable=True, max_retries=2,
        parameters=[_param("path", "string", "Repository path")],
    ),
    ToolConfig(
        name="lint-runner", description="Lint source content", category="build",
        timeout=20, retryable=True, max_retries=2,
        parameters=[
            _param("file_path", "string", "Path the content belongs to", required=True),
            _param("content", "string", "Source to lint", required=True),
            _param("language", "string", "Source language", required=True),
        ],
    ),
    ToolConfig(
        name="test-runner", description="Run a test command", category="test",
        timeout=60, retryable=True, max_retries=2,
        parameters=[
            _param("framework", "string", "Test framework name", required=True),
            _param("command", "string", "Test command", required=True),
            _param("cwd", "string", "Working directory"),
        ],
    ),
    ToolConfig(
        name="dependency-check", description="Check dependency manifests for risky specs",
        category="security", timeout=30, retryable=True, max_retries=2,
        parameters=[
            _param("target_files", "array", "Manifest files to check", required=True),
            _param("severity", "string", "Minimum severity to report", default="medium",
                   validation=[_SEVERITY_ENUM]),
        ],
    ),
    ToolConfig(
        name="secret-scanner", description="Scan files for hardcoded secrets", category="security",
        timeout=20, retryable=True, max_retries=2,
        parameters=[_param("target_files", "array", "Files to scan", required=True)],
    ),
]

DEFAULT_MODEL_TOOL_CONFIGS: list[ToolConfig] = [
    ToolConfig(
        name="web-search", description="Search the web", kind=ToolKind.MODEL,
        category="documentation", timeout=15, retryable=True, max_retries=2,
        parameters=[
            _param("query", "string", "Search query", required=True),
            _param("num", "number", "Number of results", default=10,
                   validation=[
                       ValidationRule(type="min", value=1, message="num must be >= 1"),
                       ValidationRule(type="max", value=50, message="num must be <= 50"),
                   ]),
        ],
    ),
    ToolConfig(
        name="documentation-lookup", description="Find official documentation", kind=ToolKind.MODEL,
        category="documentation", timeout=15, retryable=True, max_retries=2,
        parameters=[
            _param("topic", "string", "Topic to look up", required=True),
            _param("num", "number", "Number of results", default=5),
        ],
    ),
]
