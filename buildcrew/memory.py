"""
BUILDCREW Memory Manager

Working memory for the crew:

  - Task memory: steps, result snapshots and the audit trail of one task
  - Repo memory: long-lived project knowledge, merged field by field
  - Generic cache: typed key/value entries with an optional TTL
  - Vector store: cosine similarity search over embeddings (numpy)

Everything lives in process memory behind InMemoryStore. A periodic
sweep evicts the least-recently-updated task and repo memories past
their ceilings, expired cache entries and stale vectors.
"""

from __future__ import annotations

import itertools
import json
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Generic, Literal, TypeVar

import numpy as np
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from buildcrew.config_loader import MemoryConfig
from buildcrew.errors import NotFoundError, ValidationFailedError
from buildcrew.indexer import build_index, recent_history
from buildcrew.models import AuditEntry, TaskContext, TaskResult, new_id, utcnow

V = TypeVar("V")


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class InMemoryStore(Generic[V]):
    """Thread-safe key/value map. The only storage the manager talks to."""

    def __init__(self):
        self._data: dict[str, V] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> V | None:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: V) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def list(self) -> list[str]:
        with self._lock:
            return list(self._data)

    def items(self) -> list[tuple[str, V]]:
        with self._lock:
            return list(self._data.items())

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

_revision = itertools.count()


class MemoryEntry(BaseModel):
    key: str
    type: str = "task"
    value: Any = None
    created_at: float
    ttl: float | None = None  # seconds
    access_count: int = 0
    last_access: float

    def expired(self, now: float) -> bool:
        return self.ttl is not None and now - self.created_at > self.ttl


class TaskStep(BaseModel):
    id: str = Field(default_factory=lambda: new_id("step"))
    description: str
    status: Literal["pending", "in_progress", "completed", "failed"] = "pending"
    started_at: datetime | None = None
    ended_at: datetime | None = None
    result: TaskResult | None = None
    dependencies: list[str] = Field(default_factory=list)


class TaskMemory(BaseModel):
    task_id: str
    context: TaskContext = Field(default_factory=TaskContext)
    steps: list[TaskStep] = Field(default_factory=list)
    results: dict[str, TaskResult] = Field(default_factory=dict)
    audit_log: list[AuditEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    revision: int = Field(default_factory=lambda: next(_revision))

    def touch(self) -> None:
        self.updated_at = utcnow()
        self.revision = next(_revision)


class FileInfo(BaseModel):
    path: str
    size: int = 0
    language: str = "text"
    type: Literal["source", "test", "config", "documentation", "other"] = "source"


class DirectoryInfo(BaseModel):
    path: str
    file_count: int = 0


class RepoStructure(BaseModel):
    files: list[FileInfo] = Field(default_factory=list)
    directories: list[DirectoryInfo] = Field(default_factory=list)
    total_size: int = 0
    language_stats: dict[str, int] = Field(default_factory=dict)


class SymbolInfo(BaseModel):
    name: str
    type: str
    file: str
    line: int = 0
    language: str = ""


class SymbolTable(BaseModel):
    symbols: list[SymbolInfo] = Field(default_factory=list)
    references: list[dict[str, Any]] = Field(default_factory=list)


class DependencyNode(BaseModel):
    id: str
    type: Literal["file", "module", "package"] = "module"
    name: str
    version: str | None = None
    path: str = ""


class DependencyEdge(BaseModel):
    source: str
    target: str
    type: Literal["imports", "requires", "extends", "implements"] = "imports"


class DependencyGraph(BaseModel):
    nodes: list[DependencyNode] = Field(default_factory=list)
    edges: list[DependencyEdge] = Field(default_factory=list)
    cycles: list[list[str]] = Field(default_factory=list)


class CommitInfo(BaseModel):
    hash: str
    author: str
    message: str
    timestamp: str


class CommitHistory(BaseModel):
    commits: list[CommitInfo] = Field(default_factory=list)
    branches: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class RepoMetadata(BaseModel):
    name: str
    description: str | None = None
    version: str | None = None
    license: str | None = None
    authors: list[str] = Field(default_factory=list)
    technologies: list[str] = Field(default_factory=list)
    complexity: float = 0.0
    maintainability: float = 0.0
    test_coverage: float = 0.0


class RepoMemory(BaseModel):
    repo_id: str
    path: str
    structure: RepoStructure = Field(default_factory=RepoStructure)
    symbols: SymbolTable = Field(default_factory=SymbolTable)
    dependencies: DependencyGraph = Field(default_factory=DependencyGraph)
    history: CommitHistory = Field(default_factory=CommitHistory)
    metadata: RepoMetadata
    last_updated: datetime = Field(default_factory=utcnow)
    revision: int = Field(default_factory=lambda: next(_revision))

    def touch(self) -> None:
        self.last_updated = utcnow()
        self.revision = next(_revision)


@dataclass
class VectorStoreEntry:
    id: str
    vector: np.ndarray
    metadata: dict[str, Any]
    timestamp: float


class VectorMatch(BaseModel):
    id: str
    similarity: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class MemoryStats(BaseModel):
    task_memories: int
    repo_memories: int
    generic_entries: int
    vector_entries: int
    total_size: int


def _merge(model: BaseModel, update: dict[str, Any]) -> BaseModel:
    """Shallow-merge `update` over `model`, re-validating the result."""
    unknown = set(update) - set(type(model).model_fields)
    if unknown:
        raise ValidationFailedError(f"Unknown fields for {type(model).__name__}: {sorted(unknown)}")
    try:
        return type(model).model_validate({**model.model_dump(), **update})
    except ValidationError as e:
        raise ValidationFailedError(str(e), errors=[err["msg"] for err in e.errors()]) from e


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class MemoryManager:
    def __init__(self, config: MemoryConfig | None = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or MemoryConfig()
        self._clock = clock
        self._tasks: InMemoryStore[TaskMemory] = InMemoryStore()
        self._repos: InMemoryStore[RepoMemory] = InMemoryStore()
        self._entries: InMemoryStore[MemoryEntry] = InMemoryStore()
        self._vectors: InMemoryStore[VectorStoreEntry] = InMemoryStore()
        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    # -- lifecycle --------------------------------------------------------

    def initialize(self) -> None:
        """Start the background sweep. Idempotent."""
        if self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="buildcrew-memory-sweep", daemon=True)
        self._sweeper.start()
        logger.info(f"[MEMORY] Sweep every {self.config.cleanup_interval:g}s")

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.config.cleanup_interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"[MEMORY] Sweep failed: {e}")

    def shutdown(self) -> None:
        logger.info("[MEMORY] Shutting down")
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
        for store in (self._tasks, self._repos, self._entries, self._vectors):
            store.clear()

    # -- task memory ------------------------------------------------------

    def create_task_memory(self, task_id: str, context: TaskContext | None = None) -> TaskMemory:
        memory = TaskMemory(task_id=task_id, context=context or TaskContext())
        self._tasks.put(task_id, memory)
        logger.debug(f"[MEMORY] Created task memory for {task_id}")
        return memory

    def get_task_memory(self, task_id: str) -> TaskMemory:
        memory = self._tasks.get(task_id)
        if memory is None:
            raise NotFoundError(f"Task memory not found: {task_id}")
        return memory

    def has_task_memory(self, task_id: str) -> bool:
        return task_id in self._tasks

    def get_task_context(self, task_id: str) -> TaskContext:
        return self.get_task_memory(task_id).context

    def update_task_context(self, task_id: str, update: dict[str, Any]) -> TaskContext:
        memory = self.get_task_memory(task_id)
        memory.context = _merge(memory.context, update)
        memory.touch()
        return memory.context

    def add_task_step(self, task_id: str, description: str, dependencies: list[str] | None = None) -> str:
        memory = self.get_task_memory(task_id)
        step = TaskStep(description=description, dependencies=list(dependencies or []))
        memory.steps.append(step)
        memory.touch()
        return step.id

    def update_task_step(self, task_id: str, step_id: str, update: dict[str, Any]) -> TaskStep:
        memory = self.get_task_memory(task_id)
        for i, step in enumerate(memory.steps):
            if step.id == step_id:
                memory.steps[i] = _merge(step, update)
                memory.touch()
                return memory.steps[i]
        raise NotFoundError(f"Task step not found: {step_id}")

    def store_task_result(self, task_id: str, result: TaskResult) -> str:
        memory = self.get_task_memory(task_id)
        key = f"result-{len(memory.results) + 1}"
        memory.results[key] = result
        memory.touch()
        return key

    def add_audit_entry(self, task_id: str, entry: AuditEntry) -> None:
        memory = self.get_task_memory(task_id)
        memory.audit_log.append(entry)
        memory.touch()

    def get_task_memory_summary(self, task_id: str) -> dict[str, Any]:
        memory = self.get_task_memory(task_id)
        return {
            "task_id": task_id,
            "steps_count": len(memory.steps),
            "results_count": len(memory.results),
            "audit_log_count": len(memory.audit_log),
            "created_at": memory.created_at,
            "updated_at": memory.updated_at,
        }

    def delete_task_memory(self, task_id: str) -> bool:
        return self._tasks.delete(task_id)

    # -- repo memory ------------------------------------------------------

    def create_repo_memory(self, repo_id: str, path: str | Path) -> RepoMemory:
        memory = RepoMemory(repo_id=repo_id, path=str(path), metadata=RepoMetadata(name=repo_id))
        self._repos.put(repo_id, memory)
        logger.debug(f"[MEMORY] Created repo memory for {repo_id}")
        return memory

    def get_repo_memory(self, repo_id: str) -> RepoMemory | None:
        return self._repos.get(repo_id)

    def _require_repo(self, repo_id: str) -> RepoMemory:
        memory = self._repos.get(repo_id)
        if memory is None:
            raise NotFoundError(f"Repo memory not found: {repo_id}")
        return memory

    def _update_repo(self, repo_id: str, section: str, update: dict[str, Any]) -> None:
        memory = self._require_repo(repo_id)
        setattr(memory, section, _merge(getattr(memory, section), update))
        memory.touch()
        logger.debug(f"[MEMORY] Updated repo {section} for {repo_id}")

    def update_repo_structure(self, repo_id: str, update: dict[str, Any]) -> None:
        self._update_repo(repo_id, "structure", update)

    def update_repo_symbols(self, repo_id: str, update: dict[str, Any]) -> None:
        self._update_repo(repo_id, "symbols", update)

    def update_repo_dependencies(self, repo_id: str, update: dict[str, Any]) -> None:
        self._update_repo(repo_id, "dependencies", update)

    def update_repo_history(self, repo_id: str, update: dict[str, Any]) -> None:
        self._update_repo(repo_id, "history", update)

    def update_repo_metadata(self, repo_id: str, update: dict[str, Any]) -> None:
        self._update_repo(repo_id, "metadata", update)

    def refresh_repo_memory(self, repo_id: str, history_limit: int = 20) -> RepoMemory:
        """Re-index the repository on disk and merge what was found."""
        memory = self._require_repo(repo_id)
        root = Path(memory.path)
        index = build_index(root)

        files = []
        directories: dict[str, int] = {}
        total_size = 0
        for entry in index.files.values():
            try:
                size = (root / entry.path).stat().st_size
            except OSError:
                size = 0
            total_size += size
            files.append({
                "path": entry.path,
                "size": size,
                "language": entry.language,
                "type": "test" if entry.is_test else "source",
            })
            parent = str(Path(entry.path).parent)
            directories[parent] = directories.get(parent, 0) + 1

        self.update_repo_structure(repo_id, {
            "files": files,
            "directories": [{"path": d, "file_count": n} for d, n in sorted(directories.items())],
            "total_size": total_size,
            "language_stats": dict(index.languages),
        })
        self.update_repo_symbols(repo_id, {
            "symbols": [
                {
                    "name": s.name,
                    "type": s.kind,
                    "file": s.file,
                    "line": s.line,
                    "language": index.files[s.file].language,
                }
                for s in index.all_symbols()
            ],
        })
        nodes = {}
        edges = []
        for entry in index.files.values():
            nodes[entry.path] = {"id": entry.path, "type": "file", "name": entry.path, "path": entry.path}
            for target in entry.imports:
                nodes.setdefault(target, {"id": target, "type": "module", "name": target})
                edges.append({"source": entry.path, "target": target, "type": "imports"})
        self.update_repo_dependencies(repo_id, {"nodes": list(nodes.values()), "edges": edges})

        commits = recent_history(root, history_limit)
        if commits:
            self.update_repo_history(repo_id, {
                "commits": [
                    {"hash": c.sha, "author": c.author, "message": c.message, "timestamp": c.date}
                    for c in commits
                ],
            })
        self.update_repo_metadata(repo_id, {"technologies": sorted(index.languages)})

        logger.info(f"[MEMORY] Refreshed repo {repo_id}: {index.total_files} files")
        return self._require_repo(repo_id)

    # -- generic cache ----------------------------------------------------

    @staticmethod
    def _entry_id(key: str, type_: str) -> str:
        return f"{type_}-{key}"

    def store(self, key: str, value: Any, type: str = "task", ttl: float | None = None) -> None:
        now = self._clock()
        self._entries.put(
            self._entry_id(key, type),
            MemoryEntry(key=key, type=type, value=value, created_at=now, ttl=ttl, last_access=now),
        )

    def retrieve(self, key: str, type: str = "task") -> Any | None:
        entry_id = self._entry_id(key, type)
        entry = self._entries.get(entry_id)
        if entry is None:
            return None
        now = self._clock()
        if entry.expired(now):
            self._entries.delete(entry_id)
            logger.debug(f"[MEMORY] Evicted expired entry {entry_id} on read")
            return None
        entry.access_count += 1
        entry.last_access = now
        return entry.value

    # -- vector store -----------------------------------------------------

    def add_to_vector_store(self, id: str, vector: list[float], metadata: dict[str, Any] | None = None) -> None:
        if not self.config.enable_vector_store:
            logger.debug("[MEMORY] Vector store disabled; ignoring add")
            return
        array = np.asarray(vector, dtype=np.float64)
        dimension = self.config.vector_store.dimension
        if array.ndim != 1 or array.shape[0] != dimension:
            raise ValidationFailedError(f"Vector for {id} has shape {array.shape}, expected ({dimension},)")
        self._vectors.put(id, VectorStoreEntry(id=id, vector=array, metadata=dict(metadata or {}), timestamp=self._clock()))

    def search_vector_store(self, query: list[float], limit: int = 10) -> list[VectorMatch]:
        """Cosine similarity against every stored vector, thresholded, top-K descending."""
        if not self.config.enable_vector_store:
            return []
        entries = [entry for _, entry in self._vectors.items()]
        if not entries:
            return []

        q = np.asarray(query, dtype=np.float64)
        if q.ndim != 1 or q.shape[0] != self.config.vector_store.dimension:
            raise ValidationFailedError(f"Query vector has shape {q.shape}")

        matrix = np.stack([e.vector for e in entries])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, (matrix @ q) / norms, 0.0)

        threshold = self.config.vector_store.similarity_threshold
        order = np.argsort(-scores, kind="stable")
        matches = []
        for i in order:
            if scores[i] < threshold or len(matches) >= limit:
                break
            matches.append(VectorMatch(id=entries[i].id, similarity=float(scores[i]), metadata=entries[i].metadata))
        return matches

    # -- eviction ---------------------------------------------------------

    def sweep(self) -> bool:
        """Run one eviction pass. Returns False if another pass is already running."""
        if not self._sweep_lock.acquire(blocking=False):
            logger.debug("[MEMORY] Sweep already in flight; skipping")
            return False
        try:
            removed = self._evict_oldest(self._tasks, self.config.max_task_memory)
            removed += self._evict_oldest(self._repos, self.config.max_repo_memory)

            now = self._clock()
            for entry_id, entry in self._entries.items():
                if entry.expired(now):
                    self._entries.delete(entry_id)
                    removed += 1

            for vector_id, entry in self._vectors.items():
                if now - entry.timestamp > self.config.cache_ttl:
                    self._vectors.delete(vector_id)
                    removed += 1

            if removed:
                logger.debug(f"[MEMORY] Sweep evicted {removed} entries")
            return True
        finally:
            self._sweep_lock.release()

    @staticmethod
    def _evict_oldest(store: InMemoryStore, ceiling: int) -> int:
        items = store.items()
        excess = len(items) - ceiling
        if excess <= 0:
            return 0
        oldest = sorted(items, key=lambda kv: kv[1].revision)[:excess]
        for key, _ in oldest:
            store.delete(key)
            logger.debug(f"[MEMORY] Evicted {key}")
        return excess

    # -- stats ------------------------------------------------------------

    def get_memory_stats(self) -> MemoryStats:
        size = 0
        for _, memory in self._tasks.items():
            size += len(memory.model_dump_json())
        for _, repo in self._repos.items():
            size += len(repo.model_dump_json())
        for _, entry in self._entries.items():
            size += len(json.dumps(entry.value, default=str))
        for _, vector in self._vectors.items():
            size += vector.vector.nbytes + len(json.dumps(vector.metadata, default=str))
        return MemoryStats(
            task_memories=len(self._tasks),
            repo_memories=len(self._repos),
            generic_entries=len(self._entries),
            vector_entries=len(self._vectors),
            total_size=size,
        )
