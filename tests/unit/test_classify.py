import pytest

from ctx_engine.core.models import ChunkType
from ctx_engine.infrastructure.chunking.classify import (
    DeclarationKind,
    classify_declaration,
    contains_markup,
    is_hook_name,
)


@pytest.mark.parametrize(
    ("kind", "name", "text", "expected"),
    [
        (DeclarationKind.FUNCTION, "Card", "return <div>{x}</div>", ChunkType.COMPONENT),
        (DeclarationKind.FUNCTION, "Card", "return build(x)", ChunkType.FUNCTION),
        (DeclarationKind.FUNCTION, "card", "return <div />", ChunkType.FUNCTION),
        (DeclarationKind.FUNCTION, "useAuth", "return ctx", ChunkType.HOOK),
        (DeclarationKind.FUNCTION, "user", "", ChunkType.FUNCTION),
        (DeclarationKind.METHOD, "render", "return <div />", ChunkType.FUNCTION),
        (DeclarationKind.CLASS, "Store", "", ChunkType.CLASS),
        (DeclarationKind.INTERFACE, "Props", "", ChunkType.INTERFACE),
        (DeclarationKind.TYPE_ALIAS, "Id", "", ChunkType.TYPE),
        (DeclarationKind.ENUM, "Color", "", ChunkType.TYPE),
        (DeclarationKind.VARIABLE, "LIMIT", "", ChunkType.CONSTANT),
        (DeclarationKind.IMPORT, None, "", ChunkType.IMPORT),
        (DeclarationKind.EXPORT, None, "", ChunkType.EXPORT),
        (DeclarationKind.COMMENT, None, "", ChunkType.COMMENT),
    ],
)
def test_classify_declaration(kind, name, text, expected):
    assert classify_declaration(kind, name, text) == expected


def test_hook_name_requires_capital_after_use():
    assert is_hook_name("useState")
    assert not is_hook_name("user")
    assert not is_hook_name("use")
    assert not is_hook_name(None)


def test_contains_markup_needs_a_closing_form():
    assert contains_markup("<Header />")
    assert contains_markup("<>text</>")
    assert not contains_markup("a < b && c > d")
