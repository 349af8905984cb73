class ContextEngineError(Exception):
    """Base class for every error raised by the context engine."""


class ParseError(ContextEngineError):
    """Malformed source. Raised by the chunker's parse step and recovered inside the chunker."""


class ProviderError(ContextEngineError):
    """The embedding provider failed, timed out, or returned an unusable payload."""


class StorageError(ContextEngineError):
    """A read or write against the chunk/status store failed."""


class ConfigurationError(ContextEngineError, ValueError):
    """Missing credentials, invalid patterns, or unknown component names."""


class ConcurrencyError(ContextEngineError):
    """A full index was requested for a project that is already indexing."""

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Indexing already running for project '{project_id}'")
        self.project_id = project_id
