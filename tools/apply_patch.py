"""Unified diff tool backed by the patch healing pipeline."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .base import BaseTool, ToolError, ToolResult
from .edit import EditTool
from healing import HealedError, HealingEngine, PatchDocument

_LOG = logging.getLogger(__name__)


class ApplyPatchTool(BaseTool):
    """Apply a unified diff to one file, repairing the diff when it does not apply."""

    @property
    def name(self) -> str:
        return "apply_patch"

    @property
    def description(self) -> str:
        return (
            "Apply a unified diff to a file inside the project sandbox. "
            "Diffs with wrong line numbers or drifted context are repaired when possible."
        )

    def __init__(self, engine: Optional[HealingEngine] = None, repo_dir: Optional[Path] = None):
        super().__init__(
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "File the patch applies to"},
                    "patch": {"type": "string", "description": "Unified diff text"},
                    "explanation": {
                        "type": "string",
                        "description": "What the patch is meant to change",
                    },
                },
                "required": ["path", "patch"],
            }
        )
        self.engine = engine or HealingEngine()
        # reuse the editor's sandbox and locked writes
        self._editor = EditTool(engine=self.engine, repo_dir=repo_dir)

    async def __call__(
        self,
        *,
        path: str,
        patch: str,
        explanation: str = "",
        **kwargs: Any,
    ) -> ToolResult:
        try:
            target = self._editor._resolve_path(path)
            if not target.is_file():
                raise ToolError(f"Path not found: {target}")
            document = PatchDocument(uri=str(target), content=self._editor._read_file(target))
            outcome = await self.engine.heal_patch(patch, document, explanation)
            self._editor._write_file(target, outcome.commit.content)
        except HealedError as exc:
            _LOG.error("Healed patch still failed", exc_info=True)
            return ToolResult(
                output=f"Patch could not be applied to {path}: {exc.original_error}",
                error=str(exc),
                tool_name=self.name,
                command="apply_patch",
            )
        except Exception as exc:
            _LOG.error("ApplyPatchTool failure", exc_info=True)
            return ToolResult(
                output=f"Patch could not be applied to {path}: {exc}",
                error=str(exc),
                tool_name=self.name,
                command="apply_patch",
            )

        commit = outcome.commit
        summary = f"Applied patch to {target} (+{commit.additions} -{commit.deletions})"
        message = "[healed: patch]" if outcome.was_healed else None
        if message:
            summary = f"{message}\n{summary}"
        return ToolResult(output=summary, message=message, tool_name=self.name, command="apply_patch")

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "healing_enabled": self.engine.flags.is_patch_healing_enabled()}
