"""Configuration helpers for Wayfarer services."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class LLMConfig:
    """Settings for the decision, chat and enrichment models."""

    api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    model: str = os.getenv("WAYFARER_LLM_MODEL", "gpt-4o")
    planner_model: str = os.getenv("WAYFARER_PLANNER_MODEL", "gpt-4o-mini")
    request_timeout: float = float(os.getenv("WAYFARER_LLM_TIMEOUT", "60"))
    max_completion_tokens: Optional[int] = None

    def __post_init__(self) -> None:
        max_tokens = os.getenv("WAYFARER_LLM_MAX_COMPLETION_TOKENS") or os.getenv("OPENAI_MAX_COMPLETION_TOKENS")
        if max_tokens:
            try:
                self.max_completion_tokens = int(max_tokens)
            except ValueError:
                self.max_completion_tokens = None


@dataclass(slots=True)
class BrowserConfig:
    """Playwright launch settings."""

    headless: bool = _env_flag("WAYFARER_HEADLESS", True)
    viewport_width: int = int(os.getenv("WAYFARER_VIEWPORT_WIDTH", "1920"))
    viewport_height: int = int(os.getenv("WAYFARER_VIEWPORT_HEIGHT", "1080"))
    navigation_timeout_ms: int = int(os.getenv("WAYFARER_NAVIGATION_TIMEOUT_MS", "30000"))


@dataclass(slots=True)
class StorageConfig:
    """Where session folders are written."""

    root_dir: str = os.getenv("WAYFARER_SESSIONS_ROOT", "exploration_sessions")


@dataclass(slots=True)
class ServerConfig:
    """Dashboard transport settings."""

    host: str = os.getenv("WAYFARER_HOST", "0.0.0.0")
    port: int = int(os.getenv("WAYFARER_PORT", "3001"))
    cors_origins: List[str] = field(
        default_factory=lambda: [
            origin.strip()
            for origin in os.getenv("WAYFARER_CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
            if origin.strip()
        ]
    )


@dataclass(slots=True)
class AppConfig:
    """Aggregated configuration for the exploration service."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


CONFIG = AppConfig()
