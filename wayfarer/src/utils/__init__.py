"""Utility exports for Wayfarer."""
from wayfarer.src.utils.config import CONFIG, AppConfig, BrowserConfig, LLMConfig, ServerConfig, StorageConfig

__all__ = [
    "CONFIG",
    "AppConfig",
    "BrowserConfig",
    "LLMConfig",
    "ServerConfig",
    "StorageConfig",
]
