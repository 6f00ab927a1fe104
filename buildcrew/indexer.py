"""
BUILDCREW Repo Indexer

Walks a repository and extracts what the repo memory keeps:
file layout, top-level symbols, imports, dependency manifests
and recent commit history. Regex-based, no AST, fast enough to
re-run on every refresh.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

# ---------------------------------------------------------------------------
# Constants & Configuration
# ---------------------------------------------------------------------------

SKIP_DIRS = {
    ".git", ".buildcrew", ".venv", "venv", "env",
    "node_modules", "target", "dist", "build", "__pycache__",
    ".tox", ".mypy_cache", ".pytest_cache", ".ruff_cache",
    ".next", "coverage", "vendor",
}

CODE_EXTENSIONS = {
    ".rs", ".py", ".ts", ".tsx", ".js", ".jsx", ".go", ".java", ".v", ".sv",
}

MANIFEST_FILES = {
    "pyproject.toml", "requirements.txt", "setup.py", "package.json",
    "Cargo.toml", "go.mod",
}

LANGUAGE_BY_EXTENSION = {
    ".py": "python",
    ".rs": "rust",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".go": "go",
    ".java": "java",
    ".v": "verilog",
    ".sv": "systemverilog",
}

SYMBOL_PATTERNS = {
    ".py": [
        re.compile(r"^(class|def)\s+([a-zA-Z_][a-zA-Z0-9_]*)", re.MULTILINE),
    ],
    ".rs": [
        re.compile(r"^(?:pub\s+)?(struct|enum|trait|fn|type)\s+([a-zA-Z_][a-zA-Z0-9_]*)", re.MULTILINE),
    ],
    ".ts": [
        re.compile(r"^(?:export\s+)?(class|interface|type|function|const|enum)\s+([a-zA-Z_][a-zA-Z0-9_]*)", re.MULTILINE),
    ],
    ".js": [
        re.compile(r"^(?:export\s+)?(class|function|const)\s+([a-zA-Z_][a-zA-Z0-9_]*)", re.MULTILINE),
    ],
    ".go": [
        re.compile(r"^(func|type)\s+([a-zA-Z_][a-zA-Z0-9_]*)", re.MULTILINE),
    ],
}
SYMBOL_PATTERNS[".tsx"] = SYMBOL_PATTERNS[".ts"]
SYMBOL_PATTERNS[".jsx"] = SYMBOL_PATTERNS[".js"]

IMPORT_PATTERNS = {
    ".py": re.compile(r"^(?:from|import)\s+([a-zA-Z0-9_\.]+)", re.MULTILINE),
    ".rs": re.compile(r"^use\s+([a-zA-Z0-9_:]+)", re.MULTILINE),
    ".ts": re.compile(r"^import\s+.*?from\s+['\"]([^'\"]+)['\"]", re.MULTILINE),
    ".js": re.compile(r"^import\s+.*?from\s+['\"]([^'\"]+)['\"]", re.MULTILINE),
}

MAX_LINES = 500

# ---------------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------------

@dataclass
class SymbolEntry:
    name: str
    kind: str
    file: str
    line: int


@dataclass
class FileEntry:
    path: str
    language: str
    symbols: list[SymbolEntry] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    is_test: bool = False


@dataclass
class CommitEntry:
    sha: str
    author: str
    date: str
    message: str


@dataclass
class RepoIndex:
    """A deterministic map of the repository."""
    root: str
    files: dict[str, FileEntry] = field(default_factory=dict)
    languages: dict[str, int] = field(default_factory=dict)
    manifests: list[str] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return len(self.files)

    def all_symbols(self) -> list[SymbolEntry]:
        return [s for entry in self.files.values() for s in entry.symbols]

    def summary(self, max_files: int = 50) -> str:
        """Short text map for prompts."""
        langs = ", ".join(f"{k}({v})" for k, v in sorted(self.languages.items(), key=lambda x: -x[1]))
        parts = [f"{self.total_files} code files | Languages: {langs or 'none'}"]
        if self.manifests:
            parts.append(f"Manifests: {', '.join(self.manifests)}")
        ranked = sorted(self.files.values(), key=lambda f: len(f.symbols), reverse=True)
        for entry in ranked[:max_files]:
            names = ", ".join(s.name for s in entry.symbols[:8])
            parts.append(f"  - {entry.path}" + (f" [{names}]" if names else ""))
        return "\n".join(parts)


# ---------------------------------------------------------------------------
# Extraction Logic
# ---------------------------------------------------------------------------

def _read_head(path: Path) -> str:
    lines: list[str] = []
    with open(path, "r", encoding="utf-8", errors="ignore") as f:
        for _ in range(MAX_LINES):
            line = f.readline()
            if not line:
                break
            lines.append(line)
    return "".join(lines)


def _harvest(path: Path, rel_path: str) -> tuple[list[SymbolEntry], list[str]]:
    ext = path.suffix
    try:
        text = _read_head(path)
    except OSError as e:
        logger.debug(f"[INDEX] Could not read {rel_path}: {e}")
        return [], []

    symbols: list[SymbolEntry] = []
    for pattern in SYMBOL_PATTERNS.get(ext, []):
        for match in pattern.finditer(text):
            line = text.count("\n", 0, match.start()) + 1
            symbols.append(SymbolEntry(name=match.group(2), kind=match.group(1), file=rel_path, line=line))

    imports: list[str] = []
    import_pattern = IMPORT_PATTERNS.get(ext) or IMPORT_PATTERNS.get(ext.rstrip("x"))
    if import_pattern:
        imports = sorted(set(import_pattern.findall(text)))

    return symbols, imports


def _is_test(path: str) -> bool:
    lower = path.lower()
    return any(x in lower for x in ["test", "spec", "__tests__"])


def _list_files(repo_path: Path) -> list[str]:
    try:
        return subprocess.check_output(
            ["git", "ls-files"], cwd=repo_path, text=True, stderr=subprocess.DEVNULL
        ).splitlines()
    except (subprocess.CalledProcessError, OSError):
        logger.debug("[INDEX] Not a git checkout, walking the tree")
        return [str(p.relative_to(repo_path)) for p in repo_path.rglob("*") if p.is_file()]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def build_index(repo_path: Path) -> RepoIndex:
    """Index code files and manifests. Honors .gitignore inside git checkouts."""
    repo_path = repo_path.resolve()
    index = RepoIndex(root=str(repo_path))

    for rel_path in _list_files(repo_path):
        if any(part in SKIP_DIRS for part in Path(rel_path).parts):
            continue
        full_path = repo_path / rel_path
        if full_path.name in MANIFEST_FILES:
            index.manifests.append(rel_path)
        ext = full_path.suffix
        if ext not in CODE_EXTENSIONS:
            continue

        symbols, imports = _harvest(full_path, rel_path)
        language = LANGUAGE_BY_EXTENSION.get(ext, ext.lstrip("."))
        index.languages[language] = index.languages.get(language, 0) + 1
        index.files[rel_path] = FileEntry(
            path=rel_path,
            language=language,
            symbols=symbols,
            imports=imports,
            is_test=_is_test(rel_path),
        )

    logger.info(f"[INDEX] {index.total_files} files mapped under {repo_path}")
    return index


def recent_history(repo_path: Path, limit: int = 20) -> list[CommitEntry]:
    """Last `limit` commits, newest first. Empty outside a git checkout."""
    try:
        raw = subprocess.check_output(
            ["git", "log", f"-n{limit}", "--pretty=format:%H%x1f%an%x1f%aI%x1f%s"],
            cwd=repo_path,
            text=True,
            stderr=subprocess.DEVNULL,
        )
    except (subprocess.CalledProcessError, OSError):
        return []

    commits = []
    for line in raw.splitlines():
        parts = line.split("\x1f")
        if len(parts) == 4:
            commits.append(CommitEntry(sha=parts[0], author=parts[1], date=parts[2], message=parts[3]))
    return commits
