"""
Configuration loader for BUILDCREW.
Merges defaults with per-repo .buildcrew/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from buildcrew.errors import ConfigurationError
from buildcrew.models import AgentConfig, ModelConfig, ToolConfig


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class OrchestratorConfig(BaseModel):
    max_concurrent_tasks: int = Field(default=3, ge=1)
    task_timeout: float = Field(default=300.0, gt=0)
    enable_retry: bool = True
    max_retries: int = Field(default=3, ge=1)  # total attempts, first one included
    retry_delay: float = Field(default=1.0, ge=0)
    enable_audit_log: bool = True
    audit_log_path: str | None = None


class RateLimitConfig(BaseModel):
    requests: int = Field(default=60, ge=1)
    window: float = Field(default=60.0, gt=0)


class RouterConfig(BaseModel):
    default_model: str = "deepseek-coder"
    fallback_models: list[str] = Field(default_factory=lambda: ["code-llama", "starcoder"])
    timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=1.0, ge=0)
    retry_backoff_cap: float = Field(default=10.0, ge=0)
    cost_budget: float | None = None
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)


class VectorStoreConfig(BaseModel):
    dimension: int = Field(default=1536, ge=1)
    similarity_threshold: float = 0.8


class MemoryConfig(BaseModel):
    max_task_memory: int = Field(default=100, ge=1)
    max_repo_memory: int = Field(default=1000, ge=1)
    cache_ttl: float = Field(default=3600.0, gt=0)
    cleanup_interval: float = Field(default=60.0, gt=0)
    enable_vector_store: bool = True
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)


class WorkspaceConfig(BaseModel):
    root: str = "."
    shell_env: dict[str, str] = Field(default_factory=dict)


class BuildCrewConfig(BaseModel):
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    models: list[ModelConfig] = Field(default_factory=list)
    agents: list[AgentConfig] = Field(default_factory=list)
    tools: list[ToolConfig] = Field(default_factory=list)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(repo_path: Path | None = None, overrides: dict[str, Any] | None = None) -> BuildCrewConfig:
    """
    Load config by merging:
      1. Built-in defaults (buildcrew/config.yaml)
      2. Repo-level overrides (<repo>/.buildcrew/config.yaml)
      3. Explicit overrides passed by the caller
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if repo_path:
        repo_config = repo_path / ".buildcrew" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                repo_overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, repo_overrides)
        base.setdefault("workspace", {})
        if base["workspace"].get("root", ".") == ".":
            base["workspace"]["root"] = str(repo_path)

    if overrides:
        base = _deep_merge(base, overrides)

    try:
        return BuildCrewConfig(**base)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
        "OLLAMA_API_BASE":   bool(os.environ.get("OLLAMA_API_BASE")),
    }
