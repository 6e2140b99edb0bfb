import pytest

from healing.text_utils import (
    CONTEXT_AFTER_MARKER,
    CONTEXT_BEFORE_MARKER,
    CONTEXT_TRUNCATED_MARKER,
    count_occurrences,
    create_healing_context,
    detect_line_ending,
    extract_patch_from_response,
    find_near_match,
    line_numbers_for,
    match_and_count,
    trim_pair_if_possible,
)


def test_count_occurrences_is_literal_and_non_overlapping():
    """Counting never treats the search text as a pattern and never overlaps."""
    assert count_occurrences("aaaa", "aa") == 2
    assert count_occurrences("a.b a-b", "a.b") == 1
    assert count_occurrences("anything", "") == 0, "Empty search must never match"


def test_match_and_count_ignores_line_ending_style():
    """An LF snippet matches a CRLF document and vice versa."""
    crlf_doc = "first\r\nsecond\r\nthird\r\n"
    assert match_and_count(crlf_doc, "first\nsecond", "\r\n") == 1
    assert match_and_count("first\nsecond\n", "first\r\nsecond") == 1


def test_detect_line_ending_uses_majority():
    assert detect_line_ending("a\r\nb\r\nc\n") == "\r\n"
    assert detect_line_ending("a\nb\nc\r\n") == "\n"
    assert detect_line_ending("no newline") == "\n"


def test_line_numbers_for_reports_each_start_line():
    content = "x = 1\ny = 2\nx = 1\n"
    assert line_numbers_for(content, "x = 1") == [1, 3]


def test_trim_strips_common_prefix_and_suffix():
    """Only the differing core of the pair survives when it stays unique."""
    content = "x\nfoo = 1\ny"
    old, new = trim_pair_if_possible("foo = 1\n", "foo = 2\n", content, 1)
    assert (old, new) == ("1", "2"), f"Unexpected trim result: {(old, new)!r}"


def test_trim_stops_when_candidate_becomes_ambiguous():
    content = "a = 1\nb = 1\n"
    old, new = trim_pair_if_possible("a = 1", "a = 2", content, 1)
    assert (old, new) == ("a = 1", "a = 2"), "Trimming 'a' would leave a non-unique ' = 1'"


def test_trim_never_empties_either_side():
    content = "value: abc\n"
    old, new = trim_pair_if_possible("abc", "abcd", content, 1)
    assert old and new, "Neither side of the pair may be trimmed to nothing"
    assert match_and_count(content, old) == 1


@pytest.mark.parametrize("content, old, new", [
    ("def f():\n    return 1\n", "    return 1", "    return 2"),
    ("alpha beta gamma", "beta gamma", "beta delta gamma"),
    ("x = [1, 2, 3]\ny = [1, 2, 4]\n", "x = [1, 2, 3]", "x = [1, 2, 5]"),
    ("one\r\ntwo\r\nthree\r\n", "two\nthree", "two\nTHREE"),
])
def test_trim_preserves_occurrence_count(content, old, new):
    """Trimming never changes how often the old text occurs."""
    eol = detect_line_ending(content)
    trimmed_old, _ = trim_pair_if_possible(old, new, content, 1, eol)
    assert match_and_count(content, trimmed_old, eol) == match_and_count(content, old, eol)


def test_find_near_match_exact_hit():
    content = "header\nneedle here\nfooter\n"
    assert find_near_match(content, "needle here") == (7, 18)


def test_find_near_match_tolerates_whitespace_drift():
    """A snippet whose first line differs only in spacing anchors on that line."""
    content = "import os\n\ndef foo(a):\n    pass\n"
    region = find_near_match(content, "def  foo(a):\n  pass")
    assert region is not None
    assert content[region[0]:].startswith("def foo(a):")


def test_find_near_match_returns_none_without_overlap():
    assert find_near_match("abc abc abc", "QQQQ-ZZZZ") is None


def _long_document(lines: int = 200) -> str:
    return "".join(f"line {i:03d}: {'x' * 30}\n" for i in range(lines))


def test_healing_context_returns_small_documents_whole():
    content = "short document\n"
    assert create_healing_context(content, "missing", max_chars=2000) == content


def test_healing_context_windows_around_match():
    """Large documents are cut to a bounded window centred on the near match."""
    content = _long_document()
    window = create_healing_context(content, "line 100: xxxx", max_chars=500)
    assert "line 100:" in window
    assert window.startswith(CONTEXT_BEFORE_MARKER)
    assert window.endswith(CONTEXT_AFTER_MARKER)
    budget = 500 + len(CONTEXT_BEFORE_MARKER) + len(CONTEXT_AFTER_MARKER) + 4
    assert len(window) <= budget, f"Window of {len(window)} chars exceeds budget {budget}"


def test_healing_context_is_deterministic():
    content = _long_document()
    first = create_healing_context(content, "line 042", max_chars=400)
    second = create_healing_context(content, "line 042", max_chars=400)
    assert first == second


def test_healing_context_without_anchor_keeps_head_and_tail():
    content = _long_document()
    window = create_healing_context(content, "QQQQ-ZZZZ", max_chars=400)
    assert CONTEXT_TRUNCATED_MARKER in window
    assert window.startswith("line 000")
    assert window.rstrip().endswith("x" * 30)


def test_extract_patch_from_fenced_reply():
    reply = "Here you go:\n```diff\n--- a/f\n+++ b/f\n@@ -1 +1 @@\n-a\n+b\n```\nDone."
    assert extract_patch_from_response(reply) == "--- a/f\n+++ b/f\n@@ -1 +1 @@\n-a\n+b"


def test_extract_patch_from_bare_reply():
    assert extract_patch_from_response("  --- a/f\n+++ b/f\n") == "--- a/f\n+++ b/f"
    assert extract_patch_from_response(None) is None
