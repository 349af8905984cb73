import time
from typing import Annotated

import typer

from ctx_engine.config import settings
from ctx_engine.core.errors import ContextEngineError
from ctx_engine.core.models import SignalFlags
from ctx_engine.engine import ContextEngine
from ctx_engine.logger import configure_logger

app = typer.Typer(
    help="ctx-engine: Structural Code Context Engine for AI agents",
    no_args_is_help=True,
)

ProjectOption = Annotated[
    str, typer.Option("--project", "-p", help="Identifier the project is indexed under.")
]


def version_callback(value: bool) -> None:
    if value:
        from ctx_engine import __version__

        typer.echo(f"ctx-engine version: {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config_file: Annotated[
        str, typer.Option("--config-file", "-c", help="Path to config.yaml file.")
    ] = "config.yaml",
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            help="Show the version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """ctx-engine: index a codebase and serve token-budgeted context."""
    import os

    from ctx_engine.config import load_settings

    # Export to environment so uvicorn subprocesses (in API mode) inherit it
    os.environ["CTX_CONFIG_FILE"] = config_file

    # Dynamically update the current process global settings singleton
    new_settings = load_settings(config_file)
    for field in type(settings).model_fields:
        setattr(settings, field, getattr(new_settings, field))

    configure_logger(settings.log_level, settings.log_serialize)


def _build_engine() -> ContextEngine:
    """Dependency Injection Factory driven by config.yaml configuration."""
    try:
        return ContextEngine.from_settings(settings)
    except ContextEngineError as e:
        typer.echo(f"\n[!] Configuration Error: {e}", err=True)
        raise typer.Exit(code=1) from e


@app.command()
def index(
    path: Annotated[str, typer.Argument(help="Root directory of the project to index.")],
    project: ProjectOption = "default",
    include: Annotated[
        list[str] | None, typer.Option("--include", "-i", help="Glob of files to index (repeatable).")
    ] = None,
    exclude: Annotated[
        list[str] | None, typer.Option("--exclude", "-e", help="Glob of files to skip (repeatable).")
    ] = None,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Re-index files whose content hash is unchanged.")
    ] = False,
) -> None:
    """Chunks, embeds and stores every matching file of a project."""
    engine = _build_engine()
    try:
        result = engine.index_project(project, path, include, exclude, force)
    except ContextEngineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    typer.echo(
        f"Indexed {result.indexed_files} files ({result.skipped_files} unchanged, "
        f"{result.failed_files} unreadable): {result.total_chunks} chunks in {result.duration_ms}ms"
    )


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Text to search for.")],
    project: ProjectOption = "default",
    chunk_type: Annotated[
        list[str] | None, typer.Option("--type", "-t", help="Restrict to a chunk type (repeatable).")
    ] = None,
    path_filter: Annotated[
        str | None, typer.Option("--path", help="Restrict to a file or directory.")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Maximum number of results.")] = 10,
    hybrid: Annotated[
        bool, typer.Option("--hybrid", help="Rank with keyword, semantic and graph signals.")
    ] = False,
    no_semantic: Annotated[
        bool, typer.Option("--no-semantic", help="Skip the query embedding in hybrid mode.")
    ] = False,
) -> None:
    """Searches indexed chunks by keyword, or with hybrid ranking."""
    engine = _build_engine()
    try:
        if hybrid:
            signals = SignalFlags(semantic=not no_semantic)
            hybrid_result = engine.hybrid_search(project, query, limit=limit, signals=signals)
            if not hybrid_result.chunks:
                typer.echo("No results found")
                return
            for sc in hybrid_result.chunks:
                c = sc.chunk
                typer.echo(
                    f"[{sc.score:.3f} {sc.match_type.value}] {c.chunk_type.value} "
                    f"{c.name or '(anonymous)'} {c.file_path}:{c.start_line}-{c.end_line}"
                )
            return

        result = engine.search(project, query, chunk_type, path_filter, limit)
    except ContextEngineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    if not result.chunks:
        typer.echo("No results found")
        return
    typer.echo(f"{result.total} matches ({result.elapsed_ms:.1f}ms)")
    for c in result.chunks:
        typer.echo(f"{c.chunk_type.value} {c.name or '(anonymous)'} {c.file_path}:{c.start_line}-{c.end_line}")


@app.command()
def context(
    query: Annotated[str, typer.Argument(help="What the agent needs context for.")],
    project: ProjectOption = "default",
    max_tokens: Annotated[int, typer.Option("--max-tokens", "-m", help="Token budget.")] = 8000,
    current_file: Annotated[
        str | None, typer.Option("--current-file", help="File being edited, boosts nearby code.")
    ] = None,
    output_format: Annotated[
        str, typer.Option("--format", help="markdown, compact or xml.")
    ] = "markdown",
) -> None:
    """Prints budgeted, formatted context for a query."""
    engine = _build_engine()
    try:
        bundle = engine.get_context(project, query, max_tokens, current_file, output_format)
    except ContextEngineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo(bundle.formatted)


@app.command()
def status(project: ProjectOption = "default") -> None:
    """Shows the index status and embedding coverage of a project."""
    engine = _build_engine()
    try:
        st = engine.get_index_status(project)
        stats = engine.stats(project)
    except ContextEngineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo(f"Project: {st.project_id}")
    typer.echo(f"Status: {st.status.value}")
    typer.echo(f"Files: {st.indexed_files}/{st.total_files}")
    typer.echo(f"Chunks: {st.total_chunks}")
    typer.echo(
        f"Embeddings: {stats.with_embeddings}/{stats.total_chunks} ({stats.embedding_percent}%)"
    )
    if st.last_full_index_at is not None:
        typer.echo(f"Last full index: {st.last_full_index_at:%Y-%m-%d %H:%M:%S} ({st.index_duration_ms}ms)")
    if st.last_error:
        typer.echo(f"Last error: {st.last_error} ({st.error_count} total)")


@app.command()
def symbols(
    project: ProjectOption = "default",
    name: Annotated[
        str | None, typer.Option("--name", "-n", help="Only symbols whose name contains this text.")
    ] = None,
) -> None:
    """Lists the functions, components, hooks, classes and types of a project."""
    engine = _build_engine()
    try:
        result = engine.symbols(project, name)
    except ContextEngineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    groups = [(field, getattr(result, field)) for field in type(result).model_fields]
    if not any(chunks for _, chunks in groups):
        typer.echo("No symbols found")
        return
    for group, chunks in groups:
        if not chunks:
            continue
        typer.echo(f"{group.capitalize()} ({len(chunks)}):")
        for c in chunks:
            owner = f"{c.parent_name}." if c.parent_name else ""
            typer.echo(f"  {owner}{c.name} {c.file_path}:{c.start_line}")


@app.command()
def clear(
    project: ProjectOption = "default",
    force: Annotated[bool, typer.Option("--force", "-f", help="Bypass confirmation prompt.")] = False,
) -> None:
    """Deletes every indexed chunk of a project."""
    if not force:
        typer.confirm(f"Are you sure you want to erase the index of project '{project}'?", abort=True)

    engine = _build_engine()
    try:
        deleted = engine.clear_index(project)
    except ContextEngineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo(f"Deleted {deleted} chunks.")


@app.command()
def watch(
    path: Annotated[str, typer.Argument(help="Root directory of the project to watch.")],
    project: ProjectOption = "default",
    interval: Annotated[
        float | None, typer.Option("--interval", help="Polling interval in seconds.")
    ] = None,
    initial_index: Annotated[
        bool, typer.Option("--index/--no-index", help="Run a full index before watching.")
    ] = True,
) -> None:
    """Keeps a project's index in sync with the filesystem until interrupted."""
    engine = _build_engine()
    try:
        if initial_index:
            result = engine.index_project(project, path)
            typer.echo(f"Indexed {result.indexed_files} files, {result.total_chunks} chunks.")
        engine.watch(project, path, poll_interval_s=interval)
    except ContextEngineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    typer.echo(f"Watching {path} (Ctrl+C to stop)...")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        typer.echo("Stopping watcher...")
    finally:
        engine.shutdown()


@app.command()
def serve(
    host: Annotated[
        str, typer.Option("--host", "-h", help="Host to bind the API server to.")
    ] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="Port to bind the API server to.")] = 8000,
    reload: Annotated[
        bool, typer.Option("--reload", help="Enable auto-reload for development.")
    ] = False,
) -> None:
    """Starts the asynchronous FastAPI context server."""
    import uvicorn

    from ctx_engine.logger import intercept_stdlib_logging

    intercept_stdlib_logging()
    typer.echo(f"Starting ctx-engine API server at http://{host}:{port}...")
    uvicorn.run("ctx_engine.api.main:app", host=host, port=port, reload=reload)


@app.command()
def mcp() -> None:
    """Starts the FastMCP standard input/output (stdio) server for integrations."""
    import sys

    from ctx_engine.api.mcp_server import mcp as mcp_server
    from ctx_engine.api.state import set_engine
    from ctx_engine.logger import intercept_stdlib_logging

    intercept_stdlib_logging()
    print("[MCP Startup] Opening LanceDB tables and embedding provider...", file=sys.stderr)
    set_engine(_build_engine())
    mcp_server.run()


if __name__ == "__main__":
    app()
