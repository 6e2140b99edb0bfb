"""
File editor tool with parameter healing.

Commands
--------
view • create • str_replace • undo_edit

Highlights
~~~~~~~~~~
* ``str_replace`` is literal and line-ending tolerant. A replacement whose
  ``old_str`` is not found is handed to the :class:`healing.HealingEngine`,
  which may repair over-escaped or drifted parameters before a retry.

* Atomic, lock-safe writes with `portalocker`, size-guarded reads
  (≤ 512 KiB per file).

* Strict path sandboxing: files stay under `REPO_DIR`.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from collections import defaultdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import portalocker  # type: ignore

from .base import BaseTool, ToolError, ToolResult
from config import get_constant
from healing import (
    AmbiguousMatchError,
    EditParams,
    EditRequest,
    HealingEngine,
    HealingOutcome,
    NoMatchError,
    SourceModel,
)

# ---------------------------------------------------------------------------
# Configuration & constants
# ---------------------------------------------------------------------------

_LOG = logging.getLogger(__name__)
MAX_FILE_BYTES = 512 * 1024  # 512 KiB file size cap
SNIPPET_LINES = 4  # context lines around edits

# ---------------------------------------------------------------------------
# Command enumeration
# ---------------------------------------------------------------------------


class Command(Enum):
    VIEW = "view"
    CREATE = "create"
    STR_REPLACE = "str_replace"
    UNDO_EDIT = "undo_edit"

    @classmethod
    def list(cls) -> List[str]:
        return [c.value for c in cls]


# ---------------------------------------------------------------------------
# Tool implementation
# ---------------------------------------------------------------------------


class EditTool(BaseTool):
    """File editor whose replacements recover from malformed parameters."""

    @property
    def name(self) -> str:
        return "str_replace_editor"

    @property
    def description(self) -> str:
        return (
            "View, create and edit files inside the project sandbox. "
            "str_replace swaps an exact snippet for new text; snippets that do not "
            "match because of escaping or whitespace drift are repaired automatically."
        )

    # ------------------------------------------------------------------
    # Construction / schema
    # ------------------------------------------------------------------

    def __init__(self, engine: Optional[HealingEngine] = None, repo_dir: Optional[Path] = None):
        super().__init__(input_schema=None)
        self.engine = engine
        self._repo_dir: Path = Path(repo_dir or get_constant("REPO_DIR")).resolve()
        self._file_history: Dict[Path, List[str]] = defaultdict(list)

    def to_params(self) -> Dict[str, Any]:
        """Expose the OpenAI function‑calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {
                        "command": {"type": "string", "enum": Command.list()},
                        "path": {"type": "string"},
                        "file_text": {"type": "string"},
                        "view_range": {
                            "type": "array",
                            "items": {"type": "integer"},
                            "minItems": 2,
                            "maxItems": 2,
                        },
                        "old_str": {"type": "string"},
                        "new_str": {"type": "string"},
                        "expected_replacements": {
                            "type": "integer",
                            "minimum": 1,
                            "description": "How many times old_str must occur (default 1).",
                        },
                    },
                    "required": ["command", "path"],
                },
            },
        }

    # ------------------------------------------------------------------
    # Public entrypoint
    # ------------------------------------------------------------------

    async def __call__(
        self,
        *,
        command: str,
        path: str,
        file_text: Optional[str] = None,
        view_range: Optional[List[int]] = None,
        old_str: Optional[str] = None,
        new_str: Optional[str] = None,
        expected_replacements: int = 1,
        model: Optional[str] = None,
        **kwargs,
    ) -> ToolResult:
        try:
            cmd_enum = self._validate_command(command)
            _path = self._resolve_path(path)
            if cmd_enum is Command.CREATE:
                result = self._cmd_create(_path, file_text)
            elif cmd_enum is Command.VIEW:
                result = self._cmd_view(_path, view_range)
            elif cmd_enum is Command.STR_REPLACE:
                result = await self._cmd_str_replace(_path, old_str, new_str, expected_replacements, model)
            elif cmd_enum is Command.UNDO_EDIT:
                result = self._file_undo(_path)
            else:
                raise ToolError(f"Unhandled command {cmd_enum}")
            return result.replace(tool_name=self.name, command=command)
        except Exception as exc:
            _LOG.error("EditTool failure", exc_info=True)
            return ToolResult(
                output=f"EditTool error running {command} on {path}: {exc}",
                error=str(exc),
                tool_name=self.name,
                command=command,
            )

    # ------------------------------------------------------------------
    # Command validation
    # ------------------------------------------------------------------

    def _validate_command(self, cmd: str) -> Command:
        try:
            return Command(cmd)
        except ValueError:
            raise ToolError(
                f"Invalid command '{cmd}'. Valid commands: {', '.join(Command.list())}"
            )

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------

    def _cmd_create(self, path: Path, content: Optional[str]) -> ToolResult:
        if content is None:
            raise ToolError("`file_text` required for create")
        self._write_file(path, content)
        return ToolResult(output=f"Created {path}")

    def _cmd_view(self, path: Path, vrange: Optional[List[int]]) -> ToolResult:
        if path.is_dir():
            return ToolResult(output=self._dir_list(path))
        if path.is_file():
            return self._file_view(path, vrange)
        raise ToolError(f"Path not found: {path}")

    async def _cmd_str_replace(
        self,
        path: Path,
        old: Optional[str],
        new: Optional[str],
        expected: int,
        model: Optional[str],
    ) -> ToolResult:
        if old is None:
            raise ToolError("`old_str` required for str_replace")
        if not path.is_file():
            raise ToolError(f"Path not found: {path}")
        original = self._read_file(path)
        request = EditRequest(
            old_text=old,
            new_text=new or "",
            expected_occurrences=expected,
            source_model=SourceModel.parse(model),
        )

        async def apply(params: EditParams) -> ToolResult:
            return self._file_str_replace(path, original, params, expected)

        if self.engine is None:
            return await apply(request.params)

        result, outcome = await self.engine.apply_edit_with_healing(
            apply, request, original, file_path=str(path)
        )
        return self._annotate(result, outcome)

    def _annotate(self, result: ToolResult, outcome: HealingOutcome) -> ToolResult:
        if not outcome.healing_applied:
            return result
        note = f"[healed: {outcome.strategy.value}]"
        return result.replace(message=note, output=f"{note}\n{result.output}")

    # ------------------------------------------------------------------
    # Path helpers
    # ------------------------------------------------------------------

    def _resolve_path(self, p: str | Path) -> Path:
        p = Path(p)
        if not p.is_absolute():
            p = self._repo_dir / p
        p = p.resolve()
        if p != self._repo_dir and self._repo_dir not in p.parents:
            raise ToolError("Path escapes REPO_DIR sandbox")
        return p

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _read_file(self, path: Path) -> str:
        data = path.read_bytes()
        if len(data) > MAX_FILE_BYTES:
            raise ToolError("File too large to load")
        return data.decode("utf-8", errors="replace")

    def _write_file(self, path: Path, content: str):
        if len(content.encode()) > MAX_FILE_BYTES:
            raise ToolError("Refusing to write >512 KiB file")
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.parent.mkdir(parents=True, exist_ok=True)
        # Write bytes to avoid platform newline translation
        with portalocker.Lock(str(tmp), "wb", timeout=5) as fp:
            fp.write(content.encode("utf-8"))
        if path.exists():
            self._file_history[path].append(self._read_file(path))
        shutil.move(tmp, path)
        _LOG.info(f"Wrote {path}")

    # ------------------------------------------------------------------
    # Directory listing / view
    # ------------------------------------------------------------------

    def _dir_list(self, root: Path) -> str:
        entries: List[str] = []
        for depth in range(2):
            glob = os.path.join(*["*"] * (depth + 1))
            for item in root.glob(glob):
                if any(part.startswith(".") for part in item.relative_to(root).parts):
                    continue
                entries.append(str(item))
        return "\n".join(sorted(entries))

    def _file_view(self, path: Path, vrange: Optional[List[int]]) -> ToolResult:
        lines = self._read_file(path).splitlines()
        start = 1
        end = len(lines)
        if vrange:
            if len(vrange) != 2 or not all(isinstance(i, int) for i in vrange):
                raise ToolError("view_range must be [start, end]")
            start, end = vrange
            if start < 1 or end < -1:
                raise ToolError("Invalid view_range values")
            end = len(lines) if end == -1 else end
        snippet = "\n".join(self._numbered(lines[start - 1 : end], offset=start))
        return ToolResult(output=snippet)

    # ------------------------------------------------------------------
    # Replace string
    # ------------------------------------------------------------------

    def _file_str_replace(self, path: Path, text: str, params: EditParams, expected: int) -> ToolResult:
        pattern = self._crlf_tolerant(params.old_text)
        matches = list(re.finditer(pattern, text)) if params.old_text else []
        if not matches:
            raise NoMatchError(params.old_text, text)
        if len(matches) > expected:
            line_numbers = [text.count("\n", 0, m.start()) + 1 for m in matches]
            raise AmbiguousMatchError(params.old_text, len(matches), line_numbers)
        if len(matches) < expected:
            raise ToolError(f"Expected {expected} occurrences of old_str but found {len(matches)}")

        candidate_text = text
        for m in reversed(matches):
            candidate_text = candidate_text[: m.start()] + params.new_text + candidate_text[m.end() :]
        # Normalize EOLs to match original file style and trailing newline policy
        normalized_text = self._normalize_to_original_newlines(original=text, modified=candidate_text)
        self._write_file(path, normalized_text)
        first = matches[0].start()
        snippet = self._snippet(normalized_text, first, first + len(params.new_text))
        return ToolResult(output=f"Replaced code in {path}\n{snippet}")

    def _crlf_tolerant(self, literal: str) -> str:
        """Regex matching ``literal`` with every line break accepting LF or CRLF."""
        pieces = re.split(r"\r\n|\n", literal)
        return r"\r?\n".join(re.escape(piece) for piece in pieces)

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def _file_undo(self, path: Path) -> ToolResult:
        if not self._file_history[path]:
            raise ToolError("No edits to undo for this file")
        prev = self._file_history[path].pop()
        self._write_file(path, prev)
        # the write above pushed the undone state, drop it
        self._file_history[path].pop()
        return ToolResult(output=f"Undo successful for {path}")

    # ------------------------------------------------------------------
    # Helpers: numbering, snippet
    # ------------------------------------------------------------------

    def _numbered(self, lines: List[str], *, offset: int = 1) -> List[str]:
        return [f"{idx + offset:6}\t{line}" for idx, line in enumerate(lines)]

    def _snippet(self, text: str, start: int, end: int) -> str:
        line_start = text[:start].count("\n")
        line_end = text[:end].count("\n")
        first = max(0, line_start - SNIPPET_LINES)
        all_lines = text.splitlines()
        last = min(len(all_lines), line_end + SNIPPET_LINES + 1)
        return "\n".join(self._numbered(all_lines[first:last], offset=first + 1))

    # ------------------------------------------------------------------
    # Newline normalization helpers
    # ------------------------------------------------------------------

    def _detect_original_newline(self, text: str) -> Tuple[str, bool]:
        """Return (newline_sequence, has_trailing_newline) for the original text."""
        uses_crlf = "\r\n" in text
        stray_lf_present = "\n" in text.replace("\r\n", "")
        newline_seq = "\r\n" if uses_crlf and not stray_lf_present else "\n"
        trailing = text.endswith(("\r\n", "\n"))
        return newline_seq, trailing

    def _normalize_to_original_newlines(self, *, original: str, modified: str) -> str:
        """Match the original file's newline sequence and trailing newline policy."""
        newline_seq, trailing = self._detect_original_newline(original)

        normalized = newline_seq.join(modified.splitlines())
        if trailing:
            if not normalized.endswith(newline_seq):
                normalized += newline_seq
        elif normalized.endswith(newline_seq):
            normalized = normalized[: -len(newline_seq)]
        return normalized
