"""LLM client factory for Anthropic and OpenRouter."""
from __future__ import annotations

from research_engine.config import settings


def get_client():
    """Get an AsyncAnthropic client based on config.

    If an OpenRouter key is configured, the Anthropic SDK is pointed at the
    OpenRouter base URL. Otherwise the Anthropic API is used directly.
    """
    import anthropic

    if settings.openrouter_api_key and not settings.anthropic_api_key:
        return anthropic.AsyncAnthropic(
            api_key=settings.openrouter_api_key,
            base_url=settings.openrouter_base_url,
        )
    return anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key or None)


def get_model(role: str = "") -> str:
    """Resolve the model for one pipeline role, falling back to the default model.

    Roles map to ``<role>_model`` settings, e.g. ``planner`` -> ``planner_model``.
    """
    if role:
        override = getattr(settings, f"{role}_model", "")
        if override:
            return override
    return settings.default_model


# Singleton
_client = None


def client():
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
