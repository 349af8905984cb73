"""Pure mapping from a declaration's shape to its ChunkType."""

import re
from enum import Enum

from ctx_engine.core.models import ChunkType

_HOOK_NAME = re.compile(r"^use[A-Z]")
_MARKUP = re.compile(r"<[A-Za-z>]")


class DeclarationKind(str, Enum):
    """Syntactic shapes the structural walker reports."""

    FUNCTION = "function"  # function declaration or function-valued variable
    CLASS = "class"
    METHOD = "method"
    INTERFACE = "interface"
    TYPE_ALIAS = "type_alias"
    ENUM = "enum"
    VARIABLE = "variable"
    IMPORT = "import"
    EXPORT = "export"
    COMMENT = "comment"


def is_component_name(name: str | None) -> bool:
    return bool(name) and name[0].isupper()


def is_hook_name(name: str | None) -> bool:
    return bool(name) and _HOOK_NAME.match(name) is not None


def contains_markup(text: str) -> bool:
    """True when the text holds JSX-like syntax (an opening tag plus a closing or self-closing tag)."""
    return _MARKUP.search(text) is not None and ("/>" in text or "</" in text)


def classify_declaration(kind: DeclarationKind, name: str | None = None, text: str = "") -> ChunkType:
    """Classify a top-level declaration.

    Function-like declarations become ``component`` when capitalized and rendering
    markup, ``hook`` when following the ``useXxx`` convention, otherwise ``function``.
    """
    match kind:
        case DeclarationKind.FUNCTION:
            if is_component_name(name) and contains_markup(text):
                return ChunkType.COMPONENT
            if is_hook_name(name):
                return ChunkType.HOOK
            return ChunkType.FUNCTION
        case DeclarationKind.METHOD:
            return ChunkType.FUNCTION
        case DeclarationKind.CLASS:
            return ChunkType.CLASS
        case DeclarationKind.INTERFACE:
            return ChunkType.INTERFACE
        case DeclarationKind.TYPE_ALIAS | DeclarationKind.ENUM:
            return ChunkType.TYPE
        case DeclarationKind.VARIABLE:
            return ChunkType.CONSTANT
        case DeclarationKind.IMPORT:
            return ChunkType.IMPORT
        case DeclarationKind.EXPORT:
            return ChunkType.EXPORT
        case DeclarationKind.COMMENT:
            return ChunkType.COMMENT
    raise ValueError(f"Unknown declaration kind: '{kind}'")
