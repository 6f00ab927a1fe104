import numpy as np
import pytest

from buildcrew.config_loader import MemoryConfig, VectorStoreConfig
from buildcrew.errors import NotFoundError, ValidationFailedError
from buildcrew.memory import MemoryManager
from buildcrew.models import AuditEntry, TaskContext, TaskResult


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _manager(**config):
    clock = Clock()
    return MemoryManager(MemoryConfig(**config), clock=clock), clock


def test_task_memory_lifecycle(memory):
    memory.create_task_memory("t1", TaskContext())
    assert memory.has_task_memory("t1")

    step = memory.add_task_step("t1", "analyze")
    memory.update_task_step("t1", step, {"status": "completed"})
    memory.store_task_result("t1", TaskResult(success=True, output="done"))
    memory.add_audit_entry("t1", AuditEntry(agent="planner", action="execute_attempt"))

    summary = memory.get_task_memory_summary("t1")
    assert summary["steps_count"] == 1
    assert summary["results_count"] == 1
    assert summary["audit_log_count"] == 1
    assert memory.get_task_memory("t1").steps[0].status == "completed"

    assert memory.delete_task_memory("t1")
    assert not memory.delete_task_memory("t1")
    with pytest.raises(NotFoundError):
        memory.get_task_memory("t1")


def test_context_updates_are_validated(memory):
    memory.create_task_memory("t1")
    updated = memory.update_task_context("t1", {"files": [{"path": "a.py", "content": "x"}]})
    assert updated.files[0].path == "a.py"
    with pytest.raises(ValidationFailedError):
        memory.update_task_context("t1", {"colour": "blue"})


def test_unknown_step_is_not_found(memory):
    memory.create_task_memory("t1")
    with pytest.raises(NotFoundError):
        memory.update_task_step("t1", "step-missing", {"status": "failed"})


def test_generic_cache_ttl():
    manager, clock = _manager()
    manager.store("k", {"v": 1}, ttl=10)
    manager.store("forever", 42)
    assert manager.retrieve("k") == {"v": 1}
    clock.now += 11
    assert manager.retrieve("k") is None
    assert manager.retrieve("forever") == 42


def test_cache_entries_are_namespaced_by_type():
    manager, _ = _manager()
    manager.store("k", "task value")
    manager.store("k", "repo value", type="repo")
    assert manager.retrieve("k") == "task value"
    assert manager.retrieve("k", type="repo") == "repo value"


def test_sweep_evicts_least_recently_updated_task_memory():
    manager, _ = _manager(max_task_memory=2)
    manager.create_task_memory("a")
    manager.create_task_memory("b")
    manager.create_task_memory("c")
    manager.add_audit_entry("a", AuditEntry(agent="x", action="touch"))

    assert manager.sweep()
    assert manager.has_task_memory("a")
    assert not manager.has_task_memory("b")
    assert manager.has_task_memory("c")


def test_sweep_drops_expired_entries_and_old_vectors():
    manager, clock = _manager(cache_ttl=100, vector_store=VectorStoreConfig(dimension=3))
    manager.store("short", 1, ttl=5)
    manager.add_to_vector_store("v", [1, 0, 0])
    clock.now += 200
    manager.sweep()
    stats = manager.get_memory_stats()
    assert stats.generic_entries == 0
    assert stats.vector_entries == 0


def test_vector_search_ranks_by_cosine_similarity():
    manager, _ = _manager(vector_store=VectorStoreConfig(dimension=3, similarity_threshold=0.5))
    manager.add_to_vector_store("x", [1, 0, 0], {"label": "x"})
    manager.add_to_vector_store("xy", [1, 1, 0])
    manager.add_to_vector_store("z", [0, 0, 1])
    manager.add_to_vector_store("zero", [0, 0, 0])

    matches = manager.search_vector_store([1, 0.1, 0])
    assert [m.id for m in matches] == ["x", "xy"]
    assert matches[0].metadata == {"label": "x"}
    assert matches[0].similarity == pytest.approx(1 / np.sqrt(1.01))
    assert len(manager.search_vector_store([1, 0.1, 0], limit=1)) == 1


def test_vector_dimension_mismatch_is_rejected():
    manager, _ = _manager(vector_store=VectorStoreConfig(dimension=3))
    with pytest.raises(ValidationFailedError):
        manager.add_to_vector_store("bad", [1, 2])
    manager.add_to_vector_store("ok", [1, 2, 3])
    with pytest.raises(ValidationFailedError):
        manager.search_vector_store([1, 2])


def test_disabled_vector_store_is_inert():
    manager, _ = _manager(enable_vector_store=False, vector_store=VectorStoreConfig(dimension=2))
    manager.add_to_vector_store("v", [1, 0])
    assert manager.search_vector_store([1, 0]) == []


def test_repo_memory_refresh_indexes_files(tmp_path):
    (tmp_path / "app.py").write_text("import os\n\ndef main():\n    pass\n\nclass Runner:\n    pass\n")
    (tmp_path / "requirements.txt").write_text("requests\n")
    manager, _ = _manager()
    manager.create_repo_memory("repo", tmp_path)

    repo = manager.refresh_repo_memory("repo")

    paths = {f.path for f in repo.structure.files}
    assert "app.py" in paths
    names = {s.name for s in repo.symbols.symbols}
    assert {"main", "Runner"} <= names
    assert any(e.target == "os" for e in repo.dependencies.edges)
    assert "python" in repo.metadata.technologies


def test_unknown_repo_update_is_not_found(memory):
    with pytest.raises(NotFoundError):
        memory.update_repo_metadata("missing", {"name": "x"})


def test_initialize_is_idempotent_and_shutdown_clears():
    manager, _ = _manager(cleanup_interval=3600)
    manager.initialize()
    manager.initialize()
    manager.create_task_memory("t")
    manager.shutdown()
    assert not manager.has_task_memory("t")
