"""Lexical helpers shared by the chunkers: keywords, references, token estimates."""

import math
import re
from pathlib import PurePosixPath

# Language keywords and primitive type names that carry no retrieval signal
# fmt: off
KEYWORD_STOPLIST = frozenset(
    [
        "const", "let", "var", "function", "class", "interface", "type", "import",
        "export", "from", "return", "if", "else", "for", "while", "switch", "case",
        "break", "continue", "try", "catch", "finally", "throw", "new", "this",
        "super", "extends", "implements", "async", "await", "static", "public",
        "private", "protected", "readonly", "abstract", "true", "false", "null",
        "undefined", "void", "never", "any", "unknown", "string", "number",
        "boolean", "object", "symbol", "bigint",
    ]
)
# fmt: on

# Common globals that would otherwise dominate every reference list
REFERENCE_EXCLUSIONS = frozenset(
    ["React", "Promise", "Array", "Object", "String", "Number", "Boolean", "Date", "Error", "Map", "Set"]
)

MIN_KEYWORD_LENGTH = 3

_BLOCK_COMMENT = re.compile(r"/\*[\s\S]*?\*/")
_LINE_COMMENT = re.compile(r"//.*")
_DOUBLE_QUOTED = re.compile(r'"[^"]*"')
_SINGLE_QUOTED = re.compile(r"'[^']*'")
_TEMPLATE = re.compile(r"`[^`]*`")
_IDENTIFIER = re.compile(r"[a-zA-Z_$][a-zA-Z0-9_$]*")

EXT_TO_LANGUAGE = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "jsx",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".cpp": "cpp",
    ".c": "c",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".kt": "kotlin",
    ".sql": "sql",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".md": "markdown",
    ".css": "css",
    ".scss": "scss",
    ".html": "html",
}


def estimate_tokens(content: str) -> int:
    """Deterministic ~4 characters per token estimate."""
    return math.ceil(len(content) / 4)


def language_for_path(file_path: str) -> str:
    return EXT_TO_LANGUAGE.get(PurePosixPath(file_path).suffix.lower(), "text")


def strip_comments_and_strings(content: str) -> str:
    cleaned = _BLOCK_COMMENT.sub(" ", content)
    cleaned = _LINE_COMMENT.sub(" ", cleaned)
    cleaned = _DOUBLE_QUOTED.sub(" ", cleaned)
    cleaned = _SINGLE_QUOTED.sub(" ", cleaned)
    return _TEMPLATE.sub(" ", cleaned)


def extract_keywords(content: str) -> str:
    """Space-joined identifiers of `content`, first-seen order, stoplist and short names removed."""
    seen: dict[str, None] = {}
    for identifier in _IDENTIFIER.findall(strip_comments_and_strings(content)):
        if len(identifier) < MIN_KEYWORD_LENGTH or identifier in KEYWORD_STOPLIST:
            continue
        seen.setdefault(identifier, None)
    return " ".join(seen)


def is_reference_candidate(identifier: str) -> bool:
    return (
        len(identifier) > 1
        and identifier[0].isupper()
        and identifier[0].isascii()
        and identifier not in REFERENCE_EXCLUSIONS
    )


def extract_references(content: str, own_name: str | None = None) -> list[str]:
    """Regex fallback for references when no syntax tree is available."""
    refs: dict[str, None] = {}
    for identifier in _IDENTIFIER.findall(strip_comments_and_strings(content)):
        if identifier != own_name and is_reference_candidate(identifier):
            refs.setdefault(identifier, None)
    return list(refs)
