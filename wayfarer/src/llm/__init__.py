"""LLM collaborators."""
from wayfarer.src.llm.openai_client import OpenAIExplorationClient

__all__ = ["OpenAIExplorationClient"]
