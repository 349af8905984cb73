"""Process-wide engine handle shared by the HTTP and MCP surfaces."""

from ctx_engine.engine import ContextEngine

_engines: dict[str, ContextEngine] = {}


def get_engine() -> ContextEngine | None:
    return _engines.get("default")


def set_engine(engine: ContextEngine) -> None:
    _engines["default"] = engine


def clear_engine() -> None:
    engine = _engines.pop("default", None)
    if engine is not None:
        engine.shutdown()
