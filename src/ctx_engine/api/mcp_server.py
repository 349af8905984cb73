from mcp.server.fastmcp import FastMCP

from ctx_engine.api.state import get_engine
from ctx_engine.core.errors import ContextEngineError

mcp = FastMCP("ctx-engine")


@mcp.tool()
async def get_code_context(
    project_id: str,
    query: str,
    max_tokens: int = 8000,
    current_file: str | None = None,
    format: str = "markdown",
) -> str:
    """
    Retrieve the most relevant code of an indexed project, formatted for a prompt.

    Args:
        project_id: Identifier the project was indexed under.
        query: What you are looking for, in natural language or by identifier.
        max_tokens: Token budget of the returned context.
        current_file: Path of the file you are working in, to favour nearby code.
        format: Output format: markdown, compact or xml.
    """
    engine = get_engine()
    if engine is None:
        return "Error: Context engine is not initialized."

    try:
        bundle = engine.get_context(project_id, query, max_tokens, current_file, format)
    except ContextEngineError as e:
        return f"Context retrieval failed: {e}"

    return bundle.formatted


@mcp.tool()
async def search_code(
    project_id: str, query: str, limit: int = 10, chunk_types: list[str] | None = None
) -> str:
    """
    Keyword search over the declarations of an indexed project.

    Args:
        project_id: Identifier the project was indexed under.
        query: Substring to find in names, keywords or source.
        limit: Maximum number of results to return.
        chunk_types: Optional filter, e.g. ["function", "component"].
    """
    engine = get_engine()
    if engine is None:
        return "Error: Context engine is not initialized."

    try:
        result = engine.search(project_id, query, chunk_types=chunk_types, limit=limit)
    except ContextEngineError as e:
        return f"Search execution failed: {e}"

    if not result.chunks:
        return f"No results found for query: '{query}'"

    output = [f"Found {result.total} results for '{query}' (showing {len(result.chunks)}):\n"]
    for chunk in result.chunks:
        output.append(
            f"--- {chunk.chunk_type.value} {chunk.name or '(anonymous)'} ---\n"
            f"Location: {chunk.file_path}:{chunk.start_line}-{chunk.end_line}\n"
            f"Content:\n{chunk.content}\n"
        )
    return "\n".join(output)


@mcp.tool()
async def get_index_status(project_id: str) -> str:
    """
    Report indexing progress and totals for a project.

    Args:
        project_id: Identifier the project was indexed under.
    """
    engine = get_engine()
    if engine is None:
        return "Error: Context engine is not initialized."

    try:
        status = engine.get_index_status(project_id)
    except ContextEngineError as e:
        return f"Status lookup failed: {e}"

    lines = [
        f"Project: {status.project_id}",
        f"Status: {status.status.value}",
        f"Files: {status.indexed_files}/{status.total_files}",
        f"Chunks: {status.total_chunks}",
    ]
    if status.last_error:
        lines.append(f"Last error: {status.last_error} ({status.error_count} total)")
    return "\n".join(lines)
