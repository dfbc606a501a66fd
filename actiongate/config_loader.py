"""
Configuration loader for ACTIONGATE.
Merges defaults with per-deployment .actiongate/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    classifier: str = "gemini/gemini-2.0-flash"
    continuity: str = "gemini/gemini-2.0-flash"
    checklist: str = "gemini/gemini-2.0-flash"
    responder: str = "gemini/gemini-2.0-pro"


class LimitsConfig(BaseModel):
    max_tokens_per_conversation: int = 200_000
    max_dollars_per_conversation: float = 2.0


class GateConfig(BaseModel):
    significance_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    new_conversation_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    confirmation_tokens: list[str] = Field(
        default_factory=lambda: ["yes", "proceed", "confirm", "agree", "go ahead"]
    )
    cancellation_tokens: list[str] = Field(
        default_factory=lambda: ["no", "hold off", "cancel", "stop", "don't", "not now", "never mind"]
    )
    significant_actions: list[str] = Field(default_factory=lambda: ["update", "refine", "run"])
    exempt_actions: list[str] = Field(default_factory=lambda: ["clarify", "explain", "needs_followup"])


class ExecutionConfig(BaseModel):
    base_url: str = "http://localhost:8080"
    api_key: str = ""
    timeout_seconds: float = 60.0


class StorageConfig(BaseModel):
    backend: Literal["memory", "jsonl"] = "memory"
    directory: str = ".actiongate/conversations"


class MessagesConfig(BaseModel):
    greeting: str = "Hello! I'm your Ilumina assistant. How can I help you today?"
    upgrade: str = "You've reached your monthly limit of free chat messages."
    oracle_error: str = "Sorry, I encountered an error while processing your question. Please try again later."
    generic_error: str = "Sorry, I could not process that message. Please try again."


class ActionGateConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_ENV_OVERRIDES = {
    "ACTIONGATE_EXECUTION_URL": ("execution", "base_url"),
    "ACTIONGATE_EXECUTION_API_KEY": ("execution", "api_key"),
    "ACTIONGATE_STORAGE_DIR": ("storage", "directory"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(base_dir: Path | None = None) -> ActionGateConfig:
    """
    Load config by merging:
      1. Built-in defaults (actiongate/config.yaml)
      2. Deployment overrides (<base_dir>/.actiongate/config.yaml)
      3. Environment variable overrides
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Deployment overrides
    if base_dir:
        local_config = base_dir / ".actiongate" / "config.yaml"
        if local_config.exists():
            with open(local_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env overrides for the execution collaborator and storage.
    # Oracle API keys are read by LiteLLM directly.
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            base = _deep_merge(base, {section: {key: value}})

    return ActionGateConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "GEMINI_API_KEY":               bool(os.environ.get("GEMINI_API_KEY")),
        "GOOGLE_API_KEY":               bool(os.environ.get("GOOGLE_API_KEY")),
        "OPENAI_API_KEY":               bool(os.environ.get("OPENAI_API_KEY")),
        "ANTHROPIC_API_KEY":            bool(os.environ.get("ANTHROPIC_API_KEY")),
        "ACTIONGATE_EXECUTION_API_KEY": bool(os.environ.get("ACTIONGATE_EXECUTION_API_KEY")),
    }
