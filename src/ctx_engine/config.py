import os
from pathlib import Path

import yaml
from loguru import logger
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INCLUDE_PATTERNS = [
    "**/*.ts",
    "**/*.tsx",
    "**/*.js",
    "**/*.jsx",
    "**/*.json",
    "**/*.md",
    "**/*.css",
    "**/*.scss",
    "**/*.html",
]

DEFAULT_EXCLUDE_PATTERNS = [
    "**/node_modules/**",
    "**/.git/**",
    "**/dist/**",
    "**/build/**",
    "**/.next/**",
    "**/coverage/**",
    "**/*.min.js",
    "**/*.map",
    "**/package-lock.json",
    "**/pnpm-lock.yaml",
    "**/yarn.lock",
]


class ChunkerConfig(BaseModel):
    """Options for the structural chunker."""

    include_imports: bool = True
    include_comments: bool = False
    chunk_plain_text: bool = True
    max_chunk_lines: int = Field(100, ge=1)


class WatcherConfig(BaseModel):
    """Polling and file-selection options for the change detector."""

    poll_interval_s: float = Field(5.0, gt=0)
    include_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE_PATTERNS))
    exclude_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))


class EmbeddingConfig(BaseModel):
    """Configuration of the external embedding provider."""

    enabled: bool = True
    provider: str = "gemini"
    model_name: str = "gemini-embedding-001"
    dimensions: int = 768
    api_key: str | None = None
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    # Task types for asymmetric retrieval
    document_task: str = "RETRIEVAL_DOCUMENT"
    query_task: str = "CODE_RETRIEVAL_QUERY"

    max_input_chars: int = 8000
    batch_size: int = Field(100, ge=1)
    max_concurrency: int = Field(3, ge=1)
    rate_limit_delay_ms: int = Field(100, ge=0)
    cache_size: int = Field(1000, ge=1)
    request_timeout_s: float = 30.0
    query_timeout_s: float = 5.0


class SearchConfig(BaseModel):
    """Ranking weights and context budget defaults."""

    semantic_weight: float = 0.6
    keyword_weight: float = 0.3
    graph_weight: float = 0.1
    proximity_boost: float = 0.15
    min_score: float = 0.0
    default_limit: int = 20
    candidate_limit: int = 30
    max_tokens: int = 8000
    min_chunks: int = 3
    diversity_weight: float = 0.15


class Settings(BaseSettings):
    """Global configuration for the ctx-engine application."""

    # General System
    db_path: str = "./lancedb_ctx_engine"
    chunks_table: str = "context_chunks"
    status_table: str = "context_index_status"
    log_level: str = "INFO"
    log_serialize: bool = False

    chunker: ChunkerConfig = Field(default_factory=ChunkerConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)

    model_config = SettingsConfigDict(
        env_prefix="CTX_", env_nested_delimiter="__", env_file=".env", extra="ignore"
    )


_SECTIONS: dict[str, type[BaseModel]] = {
    "chunker": ChunkerConfig,
    "watcher": WatcherConfig,
    "embedding": EmbeddingConfig,
    "search": SearchConfig,
}


def load_settings(config_file: str | None = None) -> Settings:
    """Loads base settings and overrides them from config.yaml."""
    base_settings = Settings()

    if config_file is None:
        config_file = os.getenv("CTX_CONFIG_FILE", "config.yaml")

    yaml_path = Path(config_file)
    if not yaml_path.exists():
        logger.warning("Configuration file '{}' not found, using defaults", yaml_path)
        return base_settings

    with open(yaml_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not data:
        return base_settings

    # Override System configuration
    if "system" in data and isinstance(data["system"], dict):
        for key, value in data["system"].items():
            if hasattr(base_settings, key):
                setattr(base_settings, key, value)

    # Override component sections, keeping env-provided values the yaml does not mention
    for section, model in _SECTIONS.items():
        if section in data and isinstance(data[section], dict):
            current = getattr(base_settings, section).model_dump()
            current.update(data[section])
            setattr(base_settings, section, model(**current))

    return base_settings


# Global singleton instance
settings = load_settings()
