from ctx_engine.infrastructure.chunking.text import (
    estimate_tokens,
    extract_keywords,
    extract_references,
    language_for_path,
)


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_extract_keywords_filters_stoplist_and_short_names():
    keywords = extract_keywords("const userName = getUser(id); return userName;")

    assert keywords.split() == ["userName", "getUser"]


def test_extract_keywords_ignores_strings_and_comments():
    keywords = extract_keywords('// loadConfig\nconst path = "secretValue";')

    assert "loadConfig" not in keywords
    assert "secretValue" not in keywords
    assert "path" in keywords


def test_extract_references_excludes_globals_and_own_name():
    refs = extract_references("class Cart { items: Map<string, Item>; total: Money; }", own_name="Cart")

    assert refs == ["Item", "Money"]


def test_language_for_path():
    assert language_for_path("src/App.tsx") == "tsx"
    assert language_for_path("README.md") == "markdown"
    assert language_for_path("Makefile") == "text"
