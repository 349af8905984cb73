import hashlib
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import PurePosixPath
from typing import Any

import tree_sitter_language_pack
from loguru import logger

from ctx_engine.config import ChunkerConfig
from ctx_engine.core.errors import ParseError
from ctx_engine.core.models import Chunk, ChunkType
from ctx_engine.infrastructure.chunking.classify import DeclarationKind, classify_declaration
from ctx_engine.infrastructure.chunking.text import (
    estimate_tokens,
    extract_keywords,
    extract_references,
    is_reference_candidate,
    language_for_path,
)

# Extensions parsed into a syntax tree, mapped to their tree-sitter grammar
STRUCTURAL_GRAMMARS = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
}

SUMMARY_LINES = 10

_FUNCTION_DECLARATIONS = {"function_declaration", "generator_function_declaration"}
_FUNCTION_VALUES = {"arrow_function", "function_expression", "function", "generator_function"}
_CLASS_DECLARATIONS = {"class_declaration", "abstract_class_declaration"}
_VARIABLE_DECLARATIONS = {"lexical_declaration", "variable_declaration"}
_METHOD_NODES = {"method_definition", "method_signature", "abstract_method_signature"}
_METHOD_NAME_NODES = {"property_identifier", "private_property_identifier"}
_IDENTIFIER_NODES = {
    "identifier",
    "type_identifier",
    "property_identifier",
    "shorthand_property_identifier",
}


@lru_cache(maxsize=None)
def _get_parser(grammar: str) -> Any:
    return tree_sitter_language_pack.get_parser(grammar)


def chunk_id(project_id: str, file_path: str, chunk_type: ChunkType, name: str | None, span: tuple[int, int, int, int]) -> str:
    """Deterministic identity derived from the chunk's structural position."""
    key = f"{project_id}:{file_path}:{chunk_type.value}:{name or ''}:{span[0]}:{span[1]}:{span[2]}:{span[3]}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:24]


@dataclass
class _FileWalk:
    """Per-file accumulator. Anything appended before a failure is kept."""

    source: bytes
    file_path: str
    project_id: str
    file_hash: str
    language: str
    chunks: list[Chunk] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)

    def text(self, node: Any) -> str:
        return self.source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")

    def column(self, byte_offset: int) -> int:
        """Character column of a byte offset. tree-sitter points count bytes."""
        line_start = self.source.rfind(b"\n", 0, byte_offset) + 1
        return len(self.source[line_start:byte_offset].decode("utf-8", errors="replace"))


class StructuralChunker:
    """
    Splits source files into classified, addressable units.
    TypeScript/JavaScript are parsed with tree-sitter; other text files fall back
    to fixed line windows. Every file yields exactly one file_summary chunk.
    Implements the IChunker protocol.
    """

    def __init__(self, config: ChunkerConfig | None = None) -> None:
        self.config = config or ChunkerConfig()

    @property
    def supported_extensions(self) -> list[str]:
        return list(STRUCTURAL_GRAMMARS)

    def chunk(self, content: str, file_path: str, project_id: str, file_hash: str) -> list[Chunk]:
        """Returns the summary chunk followed by the file's structural chunks. Never raises."""
        file_path = file_path.replace("\\", "/")
        walk = _FileWalk(
            source=content.encode("utf-8", errors="surrogatepass"),
            file_path=file_path,
            project_id=project_id,
            file_hash=file_hash,
            language=language_for_path(file_path),
        )

        grammar = STRUCTURAL_GRAMMARS.get(PurePosixPath(file_path).suffix.lower())
        try:
            if grammar is not None:
                root = self._parse(walk.source, grammar)
                if root.has_error:
                    logger.debug("Syntax errors in {}, recovering what parsed", file_path)
                for node in root.children:
                    self._visit(node, walk)
            elif self.config.chunk_plain_text:
                self._chunk_lines(content, walk)
        except Exception as e:
            logger.warning(
                "Chunking degraded for {} ({} chunks recovered): {}", file_path, len(walk.chunks), e
            )
            if grammar is not None and not walk.chunks:
                self._chunk_lines(content, walk, with_references=True)

        return [self._file_summary(content, walk), *walk.chunks]

    def _parse(self, source: bytes, grammar: str) -> Any:
        try:
            return _get_parser(grammar).parse(source).root_node
        except Exception as e:
            raise ParseError(f"tree-sitter '{grammar}' failed: {e}") from e

    # ------------------------------------------------------------------ walk

    def _visit(self, node: Any, walk: _FileWalk, export_stmt: Any | None = None) -> None:
        kind = node.type
        span = export_stmt if export_stmt is not None else node

        if kind == "ERROR":
            # Declarations inside a damaged region are still worth indexing
            for child in node.children:
                self._visit(child, walk)
        elif kind == "export_statement":
            self._visit_export(node, walk)
        elif kind in _FUNCTION_DECLARATIONS:
            name = self._field_text(node, "name", walk)
            chunk_type = classify_declaration(DeclarationKind.FUNCTION, name, walk.text(node))
            self._emit(walk, span, chunk_type, name, exported=export_stmt is not None)
        elif kind in _CLASS_DECLARATIONS:
            self._visit_class(node, span, walk, exported=export_stmt is not None)
        elif kind == "interface_declaration":
            name = self._field_text(node, "name", walk)
            self._emit(walk, span, classify_declaration(DeclarationKind.INTERFACE, name), name, exported=export_stmt is not None)
        elif kind == "type_alias_declaration":
            name = self._field_text(node, "name", walk)
            self._emit(walk, span, classify_declaration(DeclarationKind.TYPE_ALIAS, name), name, exported=export_stmt is not None)
        elif kind == "enum_declaration":
            name = self._field_text(node, "name", walk)
            self._emit(walk, span, classify_declaration(DeclarationKind.ENUM, name), name, exported=export_stmt is not None)
        elif kind in _VARIABLE_DECLARATIONS:
            self._visit_variables(node, span, walk, exported=export_stmt is not None)
        elif kind == "import_statement":
            source = self._module_specifier(node, walk)
            if source is not None:
                walk.imports.append(source)
                if self.config.include_imports:
                    self._emit(walk, node, classify_declaration(DeclarationKind.IMPORT), source, imports=[source])
        elif kind == "comment" and self.config.include_comments:
            self._emit(walk, node, classify_declaration(DeclarationKind.COMMENT), None)

    def _visit_export(self, node: Any, walk: _FileWalk) -> None:
        declaration = node.child_by_field_name("declaration")
        if declaration is not None:
            self._visit(declaration, walk, export_stmt=node)
            return

        exported: list[str] = []
        source = self._module_specifier(node, walk)
        if source is not None:
            exported.append(source)
        elif any(child.type == "default" for child in node.children):
            exported.append("default")
        else:
            for clause in node.named_children:
                if clause.type != "export_clause":
                    continue
                for specifier in clause.named_children:
                    alias = specifier.child_by_field_name("alias")
                    target = alias if alias is not None else specifier.child_by_field_name("name")
                    if target is not None:
                        exported.append(walk.text(target))

        walk.exports.extend(exported)
        if self.config.include_imports:
            self._emit(walk, node, classify_declaration(DeclarationKind.EXPORT), None, exports=exported)

    def _visit_class(self, node: Any, span: Any, walk: _FileWalk, exported: bool) -> None:
        class_name = self._field_text(node, "name", walk)
        self._emit(walk, span, classify_declaration(DeclarationKind.CLASS, class_name), class_name, exported=exported)

        body = node.child_by_field_name("body")
        if body is None:
            return
        for member in body.named_children:
            if member.type not in _METHOD_NODES:
                continue
            name_node = member.child_by_field_name("name")
            if name_node is None or name_node.type not in _METHOD_NAME_NODES:
                continue
            method_name = walk.text(name_node)
            if method_name == "constructor":
                continue
            self._emit(walk, member, classify_declaration(DeclarationKind.METHOD, method_name), method_name, parent_name=class_name)

    def _visit_variables(self, node: Any, span: Any, walk: _FileWalk, exported: bool) -> None:
        declarators = [child for child in node.named_children if child.type == "variable_declarator"]
        for declarator in declarators:
            name_node = declarator.child_by_field_name("name")
            if name_node is None or name_node.type != "identifier":
                continue  # destructuring patterns have no single name
            name = walk.text(name_node)
            value = declarator.child_by_field_name("value")

            if value is not None and value.type in _FUNCTION_VALUES:
                chunk_type = classify_declaration(DeclarationKind.FUNCTION, name, walk.text(value))
            else:
                chunk_type = classify_declaration(DeclarationKind.VARIABLE, name)

            # A multi-declarator statement gets one chunk per declarator
            target = span if len(declarators) == 1 else declarator
            self._emit(walk, target, chunk_type, name, exported=exported)

    # --------------------------------------------------------------- helpers

    def _field_text(self, node: Any, field_name: str, walk: _FileWalk) -> str | None:
        child = node.child_by_field_name(field_name)
        return walk.text(child) if child is not None else None

    def _module_specifier(self, node: Any, walk: _FileWalk) -> str | None:
        source = node.child_by_field_name("source")
        if source is None:
            return None
        return walk.text(source).strip("'\"`")

    def _references(self, node: Any, walk: _FileWalk, own_name: str | None) -> list[str]:
        refs: dict[str, None] = {}
        stack = [node]
        while stack:
            current = stack.pop()
            if current.type in _IDENTIFIER_NODES:
                identifier = walk.text(current)
                if identifier != own_name and is_reference_candidate(identifier):
                    refs.setdefault(identifier, None)
            stack.extend(reversed(current.children))
        return list(refs)

    def _emit(
        self,
        walk: _FileWalk,
        node: Any,
        chunk_type: ChunkType,
        name: str | None,
        parent_name: str | None = None,
        exported: bool = False,
        imports: list[str] | None = None,
        exports: list[str] | None = None,
    ) -> None:
        content = walk.text(node)
        span = (
            node.start_point[0] + 1,
            walk.column(node.start_byte),
            node.end_point[0] + 1,
            walk.column(node.end_byte),
        )

        chunk_exports = list(exports or [])
        if exported and name:
            chunk_exports.append(name)
            walk.exports.append(name)

        walk.chunks.append(
            Chunk(
                id=chunk_id(walk.project_id, walk.file_path, chunk_type, name, span),
                project_id=walk.project_id,
                file_path=walk.file_path,
                chunk_type=chunk_type,
                name=name,
                parent_name=parent_name,
                content=content,
                language=walk.language,
                start_line=span[0],
                start_column=span[1],
                end_line=span[2],
                end_column=span[3],
                file_hash=walk.file_hash,
                imports=list(imports or []),
                exports=chunk_exports,
                references=self._references(node, walk, name),
                keywords=extract_keywords(content),
                token_count=estimate_tokens(content),
            )
        )

    def _chunk_lines(self, content: str, walk: _FileWalk, with_references: bool = False) -> None:
        """Fixed line windows for files without a syntax tree.

        `with_references` scans each window for references with the regex
        extractor, for source files whose parse failed outright.
        """
        lines = content.split("\n")
        size = self.config.max_chunk_lines
        for start in range(0, len(lines), size):
            window = lines[start : start + size]
            text = "\n".join(window)
            if not text.strip():
                continue
            span = (start + 1, 0, start + len(window), len(window[-1]))
            walk.chunks.append(
                Chunk(
                    id=chunk_id(walk.project_id, walk.file_path, ChunkType.BLOCK, None, span),
                    project_id=walk.project_id,
                    file_path=walk.file_path,
                    chunk_type=ChunkType.BLOCK,
                    content=text,
                    language=walk.language,
                    start_line=span[0],
                    start_column=span[1],
                    end_line=span[2],
                    end_column=span[3],
                    file_hash=walk.file_hash,
                    keywords=extract_keywords(text),
                    references=extract_references(text) if with_references else [],
                    token_count=estimate_tokens(text),
                )
            )

    def _file_summary(self, content: str, walk: _FileWalk) -> Chunk:
        lines = content.split("\n")
        head = lines[:SUMMARY_LINES]
        head_text = "\n".join(head)
        exports = list(dict.fromkeys(walk.exports))
        summary = (
            f"File: {walk.file_path}\n"
            f"Lines: {len(lines)}\n"
            f"Imports: {len(walk.imports)}\n"
            f"Exports: {', '.join(exports) or 'none'}"
        )
        span = (1, 0, len(head), len(head[-1]))
        name = PurePosixPath(walk.file_path).name

        return Chunk(
            id=chunk_id(walk.project_id, walk.file_path, ChunkType.FILE_SUMMARY, name, span),
            project_id=walk.project_id,
            file_path=walk.file_path,
            chunk_type=ChunkType.FILE_SUMMARY,
            name=name,
            content=head_text,
            summary=summary,
            language=walk.language,
            start_line=span[0],
            start_column=span[1],
            end_line=span[2],
            end_column=span[3],
            file_hash=walk.file_hash,
            imports=list(walk.imports),
            exports=exports,
            keywords=extract_keywords(content),
            token_count=estimate_tokens(head_text),
        )
