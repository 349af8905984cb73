from collections.abc import Callable
from typing import Any

from ctx_engine.core.errors import ConfigurationError
from ctx_engine.core.models import ScoredChunk
from ctx_engine.infrastructure.embeddings.gemini import GeminiEmbeddingProvider
from ctx_engine.services.formatting import format_compact, format_markdown, format_xml

Formatter = Callable[[list[ScoredChunk], str, bool, int], str]


class ComponentRegistry:
    """Registry pattern to dynamically map string names to implementations."""

    _formatters: dict[str, Formatter] = {
        "markdown": format_markdown,
        "compact": format_compact,
        "xml": format_xml,
    }

    _providers: dict[str, Any] = {
        "gemini": GeminiEmbeddingProvider,
    }

    @classmethod
    def get_formatter(cls, name: str) -> Formatter:
        if name not in cls._formatters:
            raise ConfigurationError(
                f"Unknown context format: '{name}'. Available: {sorted(cls._formatters)}"
            )
        return cls._formatters[name]

    @classmethod
    def get_provider(cls, name: str) -> Any:
        if name not in cls._providers:
            raise ConfigurationError(
                f"Unknown embedding provider: '{name}'. Available: {sorted(cls._providers)}"
            )
        return cls._providers[name]

    @classmethod
    def formatter_names(cls) -> list[str]:
        return list(cls._formatters)
