"""Text matching helpers shared by the healing pipelines.

All counting is literal and non-overlapping. Line endings are normalized on
both sides before comparing, so an LF snippet matches a CRLF document.
"""

import difflib
import re
from typing import List, Optional, Tuple

CONTEXT_BEFORE_MARKER = "[... content before ...]"
CONTEXT_AFTER_MARKER = "[... content after ...]"
CONTEXT_TRUNCATED_MARKER = "[... content truncated ...]"

_PATCH_FENCE_RE = re.compile(r"```(?:diff|patch)?\n?([\s\S]*?)```")


# ---------------------------------------------------------------------------
# Counting
# ---------------------------------------------------------------------------


def count_occurrences(content: str, search: str) -> int:
    """Non-overlapping literal count; an empty search never matches."""
    if not search:
        return 0
    return content.count(search)


def normalize_line_endings(text: str, eol: str = "\n") -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    if eol != "\n":
        normalized = normalized.replace("\n", eol)
    return normalized


def detect_line_ending(content: str) -> str:
    """Return ``"\\r\\n"`` when CRLF pairs outnumber bare LFs, else ``"\\n"``."""
    crlf = content.count("\r\n")
    lf = content.count("\n") - crlf
    return "\r\n" if crlf > lf else "\n"


def match_and_count(content: str, search: str, eol: str = "\n") -> int:
    return count_occurrences(
        normalize_line_endings(content, eol), normalize_line_endings(search, eol)
    )


def match_positions(content: str, search: str, eol: str = "\n") -> List[int]:
    """Start offsets of non-overlapping matches in the normalized content."""
    if not search:
        return []
    haystack = normalize_line_endings(content, eol)
    needle = normalize_line_endings(search, eol)
    positions: List[int] = []
    index = haystack.find(needle)
    while index != -1:
        positions.append(index)
        index = haystack.find(needle, index + len(needle))
    return positions


def line_numbers_for(content: str, search: str) -> List[int]:
    """1-based line numbers where ``search`` starts."""
    normalized = normalize_line_endings(content)
    return [normalized.count("\n", 0, pos) + 1 for pos in match_positions(content, search)]


# ---------------------------------------------------------------------------
# Trim optimization
# ---------------------------------------------------------------------------


def trim_pair_if_possible(
    old: str, new: str, content: str, expected: int, eol: str = "\n"
) -> Tuple[str, str]:
    """Strip the common prefix and suffix of an old/new pair.

    Characters are removed one at a time and a step is kept only while the
    trimmed old text still matches exactly ``expected`` times at the
    original match locations. Neither side is trimmed to nothing.
    """
    baseline = match_positions(content, old, eol)
    if len(baseline) != expected:
        return old, new

    # prefix
    shift = 0
    while len(old) > 1 and len(new) > 1 and old[0] == new[0]:
        candidate = old[1:]
        positions = match_positions(content, candidate, eol)
        wanted = [p + shift + len(normalize_line_endings(old[0], eol)) for p in baseline]
        if positions != wanted:
            break
        shift += len(normalize_line_endings(old[0], eol))
        old, new = candidate, new[1:]

    # suffix
    while len(old) > 1 and len(new) > 1 and old[-1] == new[-1]:
        candidate = old[:-1]
        positions = match_positions(content, candidate, eol)
        if positions != [p + shift for p in baseline]:
            break
        old, new = candidate, new[:-1]

    return old, new


# ---------------------------------------------------------------------------
# Healing context window
# ---------------------------------------------------------------------------


def _collapse_whitespace(text: str) -> str:
    return " ".join(text.split())


def find_near_match(content: str, snippet: str) -> Optional[Tuple[int, int]]:
    """Locate the region of ``content`` the snippet most likely meant.

    Returns ``(start, end)`` offsets or None. Tries, in order: an exact hit,
    a whitespace-insensitive hit on the snippet's first non-blank line, and
    the longest common block found by ``difflib.SequenceMatcher``.
    """
    if not snippet or not content:
        return None

    index = content.find(snippet)
    if index != -1:
        return index, index + len(snippet)

    first_line = next((ln for ln in snippet.splitlines() if ln.strip()), "")
    wanted = _collapse_whitespace(first_line)
    if len(wanted) >= 3:
        offset = 0
        for line in content.splitlines(keepends=True):
            if wanted in _collapse_whitespace(line):
                return offset, offset + len(snippet)
            offset += len(line)

    matcher = difflib.SequenceMatcher(None, content, snippet, autojunk=False)
    block = matcher.find_longest_match(0, len(content), 0, len(snippet))
    if block.size >= max(3, min(len(snippet) // 4, 20)):
        start = max(0, block.a - block.b)
        return start, min(len(content), start + len(snippet))
    return None


def _snap_to_lines(content: str, start: int, end: int) -> Tuple[int, int]:
    line_start = content.rfind("\n", 0, start) + 1
    line_end = content.find("\n", end)
    return line_start, len(content) if line_end == -1 else line_end


def create_healing_context(content: str, snippet: str, max_chars: int = 2000) -> str:
    """Bounded, deterministic window of ``content`` around the best near match."""
    if len(content) <= max_chars:
        return content

    region = find_near_match(content, snippet)
    if region is None:
        half = max_chars // 2
        return f"{content[:half]}\n\n{CONTEXT_TRUNCATED_MARKER}\n\n{content[-half:]}"

    match_start, match_end = region
    radius = max(0, (max_chars - (match_end - match_start)) // 2)
    start = max(0, match_start - radius)
    end = min(len(content), match_end + radius)
    start, end = _snap_to_lines(content, start, end)
    if end - start > max_chars:
        # whole lines overflowed the budget, fall back to the raw character window
        start = max(0, match_start - radius)
        end = min(len(content), match_end + radius)

    window = content[start:end]
    if start > 0:
        window = f"{CONTEXT_BEFORE_MARKER}\n\n{window}"
    if end < len(content):
        window = f"{window}\n\n{CONTEXT_AFTER_MARKER}"
    return window


# ---------------------------------------------------------------------------
# Patch responses
# ---------------------------------------------------------------------------


def extract_patch_from_response(text: Optional[str]) -> Optional[str]:
    """Pull a diff out of a fenced block, or treat the whole reply as the patch."""
    if not isinstance(text, str):
        return None
    match = _PATCH_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()
