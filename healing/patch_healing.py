"""Unified diff parsing, positional application and patch healing.

Hunks are applied against the original line numbering: each context or
deletion line must equal the document line at the cursor, deletions advance
the cursor without emitting, additions emit without advancing.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from typing import List, Optional

from .correction import CorrectionService
from .errors import (
    CorrectionServiceError,
    HealedError,
    HealingCancelledError,
    PatchBuildError,
    PatchFormatError,
    PositionalApplyError,
)
from .flags import HealingFlags
from .text_utils import detect_line_ending, normalize_line_endings
from .types import (
    Commit,
    FilePatch,
    Hunk,
    HunkLine,
    HunkLineKind,
    PatchDocument,
    PatchOutcome,
)

logger = logging.getLogger(__name__)

HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
NO_NEWLINE_MARKER = "\\ No newline at end of file"
PREVIEW_MAX_LINES = 50
MIN_CONTEXT_LINES = 3

# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _clean_path(raw: str) -> Optional[str]:
    path = raw.split("\t", 1)[0].strip()
    if path == "/dev/null":
        return None
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


def parse_patch(patch_text: str) -> List[FilePatch]:
    """Split a unified diff into per-file patches.

    Raises PatchFormatError for a hunk that appears before any file header.
    """
    lines = normalize_line_endings(patch_text).split("\n")
    while lines and lines[-1] == "":
        lines.pop()

    files: List[FilePatch] = []
    current_file: Optional[FilePatch] = None
    current_hunk: Optional[Hunk] = None
    index = 0
    while index < len(lines):
        line = lines[index]
        next_line = lines[index + 1] if index + 1 < len(lines) else ""

        if line.startswith("--- ") and next_line.startswith("+++ "):
            current_file = FilePatch(old_path=_clean_path(line[4:]), new_path=_clean_path(next_line[4:]))
            files.append(current_file)
            current_hunk = None
            index += 2
            continue

        header = HUNK_HEADER_RE.match(line)
        if header:
            if current_file is None:
                raise PatchFormatError("Hunk found before any file header")
            old_start, old_count, new_start, new_count = header.groups()
            current_hunk = Hunk(
                old_start=int(old_start),
                old_count=int(old_count) if old_count else 1,
                new_start=int(new_start),
                new_count=int(new_count) if new_count else 1,
                header=line,
            )
            current_file.hunks.append(current_hunk)
        elif current_hunk is not None and line.startswith(NO_NEWLINE_MARKER[:2]):
            pass
        elif current_hunk is not None and (line == "" or line[0] in " +-"):
            kind = HunkLineKind(line[0]) if line else HunkLineKind.CONTEXT
            current_hunk.lines.append(HunkLine(kind=kind, text=line[1:]))
        else:
            # diff --git, index lines and anything else outside a hunk
            current_hunk = None
        index += 1
    return files


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def apply_hunks(content: str, hunks: List[Hunk]) -> str:
    """Apply ``hunks`` in order; raises PositionalApplyError on any mismatch."""
    eol = detect_line_ending(content)
    source = normalize_line_endings(content).split("\n")
    result: List[str] = []
    cursor = 0

    for hunk in hunks:
        start = hunk.old_start if hunk.old_span == 0 else hunk.old_start - 1
        start = max(start, 0)
        if start < cursor:
            first = hunk.lines[0] if hunk.lines else HunkLine(HunkLineKind.CONTEXT, "")
            raise PositionalApplyError(
                "context" if first.kind is not HunkLineKind.DELETION else "deletion",
                start + 1,
                first.text,
                source[start] if start < len(source) else None,
            )
        result.extend(source[cursor:start])
        cursor = start
        for line in hunk.lines:
            if line.kind is HunkLineKind.ADDITION:
                result.append(line.text)
                continue
            actual = source[cursor] if cursor < len(source) else None
            if actual != line.text:
                raise PositionalApplyError(
                    "context" if line.kind is HunkLineKind.CONTEXT else "deletion",
                    cursor + 1,
                    line.text,
                    actual,
                )
            if line.kind is HunkLineKind.CONTEXT:
                result.append(actual)
            cursor += 1

    result.extend(source[cursor:])
    return eol.join(result)


def build_commit(patch_text: str, document: PatchDocument) -> Commit:
    """Parse ``patch_text`` and apply the part that targets ``document``."""
    files = [f for f in parse_patch(patch_text) if f.hunks]
    if not files:
        raise PatchFormatError("Patch does not contain valid file changes")

    if len(files) == 1:
        target = files[0]
    else:
        target = next((f for f in files if f.matches(document.uri)), None)
        if target is None:
            raise PatchFormatError(f"Patch does not contain changes for {document.uri}")

    content = apply_hunks(document.content, target.hunks)
    return Commit(
        patch=patch_text,
        files=[f.path for f in files],
        additions=sum(f.additions for f in files),
        deletions=sum(f.deletions for f in files),
        content=content,
        message=f"Apply patch to {document.uri}",
    )


# ---------------------------------------------------------------------------
# Healing context
# ---------------------------------------------------------------------------


def analyze_patch_issues(patch_text: str) -> List[str]:
    issues: List[str] = []
    if "@@" not in patch_text and "---" not in patch_text and "+++" not in patch_text:
        issues.append("patch may not be in proper unified diff format")

    crlf = patch_text.count("\r\n")
    if crlf and patch_text.count("\n") > crlf:
        issues.append("mixed line endings detected")

    lines = normalize_line_endings(patch_text).split("\n")
    context = sum(1 for ln in lines if ln.startswith(" "))
    changes = sum(
        1 for ln in lines
        if ln.startswith(("+", "-")) and not ln.startswith(("+++", "---"))
    )
    if changes > 0 and context < MIN_CONTEXT_LINES:
        issues.append("insufficient context lines for reliable patch application")

    if "\t" in patch_text and "    " in patch_text:
        issues.append("mixed tabs and spaces detected")
    return issues


def create_content_preview(content: str, max_lines: int = PREVIEW_MAX_LINES) -> str:
    lines = content.split("\n")
    if len(lines) <= max_lines:
        return content
    half = max_lines // 2
    omitted = len(lines) - 2 * half
    return "\n".join(lines[:half] + [f"... [{omitted} lines omitted] ..."] + lines[-half:])


def build_healing_context(patch_text: str, document: PatchDocument, explanation: str = "") -> str:
    parts = [explanation] if explanation else []
    parts.append(f"File type: {document.language_id}")
    preview = create_content_preview(document.content)
    if preview:
        parts.append(f"File content preview:\n```\n{preview}\n```")
    issues = analyze_patch_issues(patch_text)
    if issues:
        parts.append(f"Potential issues: {', '.join(issues)}")
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Healer
# ---------------------------------------------------------------------------


class PatchHealer:
    """Builds a commit from a patch, asking the backend for a fix on failure."""

    def __init__(
        self,
        correction: Optional[CorrectionService] = None,
        flags: Optional[HealingFlags] = None,
        limiter: Optional[asyncio.Semaphore] = None,
        cancellation: Optional[asyncio.Event] = None,
    ):
        self.correction = correction
        self.flags = flags or HealingFlags()
        self.limiter = limiter
        self.cancellation = cancellation

    async def apply_patch(self, patch_text: str, document: PatchDocument, explanation: str = "") -> PatchOutcome:
        try:
            return PatchOutcome(commit=build_commit(patch_text, document), was_healed=False)
        except PatchBuildError as exc:
            original = exc

        if not self.flags.is_patch_healing_enabled() or self.correction is None:
            raise original

        try:
            healed = await self._heal(patch_text, document, explanation)
        except HealingCancelledError as exc:
            raise original from exc
        if not healed:
            raise original

        try:
            commit = build_commit(healed, document)
        except PatchBuildError as healed_error:
            raise HealedError(original, healed_error, healed) from healed_error
        logger.info(f"Patch for {document.uri} applied after healing")
        return PatchOutcome(commit=commit, was_healed=True, healed_patch=healed)

    async def _heal(self, patch_text: str, document: PatchDocument, explanation: str) -> Optional[str]:
        context = build_healing_context(patch_text, document, explanation)
        limiter = self.limiter if self.limiter is not None else contextlib.nullcontext()
        try:
            async with limiter:
                healed = await self.correction.correct_patch(
                    patch=patch_text,
                    explanation=context,
                    timeout=self.flags.patch_healing_timeout(),
                    max_attempts=self.flags.patch_healing_max_attempts(),
                    cancellation=self.cancellation,
                )
        except CorrectionServiceError as exc:
            logger.warning(f"Patch healing failed: {exc}")
            return None
        if healed and healed.strip() and healed.strip() != patch_text.strip():
            return healed
        return None
