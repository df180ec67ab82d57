from orchestrator.core.sanitize import (
    B64_PREFIX,
    from_b64_snippet,
    to_b64_snippet,
    to_safe_text_snippet,
    truncate,
)


def test_truncate_keeps_short_text():
    assert truncate("hello", 10) == "hello"


def test_truncate_adds_suffix_within_limit():
    result = truncate("a" * 50, 10)
    assert result == "aaaaaaa..."
    assert len(result) == 10


def test_b64_snippet_is_prefixed_and_decodable():
    raw = "<html><body>Bad gateway</body></html>"

    snippet = to_b64_snippet(raw)

    assert snippet.startswith(B64_PREFIX)
    assert "<html>" not in snippet
    assert from_b64_snippet(snippet) == raw


def test_b64_snippet_truncates_before_encoding():
    snippet = to_b64_snippet("x" * 5000)
    decoded = from_b64_snippet(snippet)

    assert len(decoded) == 800
    assert decoded.endswith("…")


def test_b64_snippet_is_not_double_encoded():
    snippet = to_b64_snippet("boom")
    assert to_b64_snippet(snippet) == snippet


def test_from_b64_snippet_passes_plain_text_through():
    assert from_b64_snippet("plain error") == "plain error"
    assert from_b64_snippet("b64:not base64!!") == "b64:not base64!!"


def test_safe_text_snippet_escapes_and_collapses():
    text = "<script>alert('x')</script>\n\n   upstream   failed"

    safe = to_safe_text_snippet(text)

    assert "<script>" not in safe
    assert "&lt;script&gt;" in safe
    assert "  " not in safe
    assert safe.endswith("upstream failed")


def test_safe_text_snippet_truncates():
    assert len(to_safe_text_snippet("word " * 200)) == 320
