import asyncio
import json
import logging
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from healing import CorrectionService, HealingEngine, HealingFlags
from healing.flags import PRESETS
from tools import ApplyPatchTool, EditTool, ToolCollection
from utils.logger import setup_logging

console = Console()


def build_engine(preset: str, offline: bool) -> HealingEngine:
    """Create an engine from a flag preset, optionally without a correction backend."""
    flags = PRESETS[preset]() if preset != "env" else HealingFlags.from_env()
    correction = None if offline else CorrectionService()
    return HealingEngine(correction=correction, flags=flags)


def print_result(result) -> None:
    if result.error:
        console.print(Panel(result.output or result.error, title=f"{result.tool_name} failed", style="red"))
        return
    title = result.tool_name or "result"
    if result.message:
        title = f"{title} {result.message}"
    console.print(Panel(result.output or "", title=title, style="green"))


@click.group()
@click.option("--preset", type=click.Choice(list(PRESETS) + ["env"]), default="env",
              help="Feature flag preset (env reads HEALING_FLAG_* variables)")
@click.option("--offline", is_flag=True, help="Disable the LLM correction backend")
@click.option("--verbose", is_flag=True, help="Log at DEBUG level")
@click.pass_context
def cli(ctx, preset, offline, verbose):
    """toolheal CLI"""
    load_dotenv()
    setup_logging(logging.DEBUG if verbose else None)
    ctx.obj = build_engine(preset, offline)


@cli.command("heal-edit")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--old", "old_str", required=True, help="Text to replace")
@click.option("--new", "new_str", default="", help="Replacement text")
@click.option("--expected", default=1, show_default=True, help="Expected number of occurrences")
@click.option("--model", default=None, help="Model that produced the edit, e.g. gemini-2.5-pro")
@click.pass_obj
def heal_edit(engine: HealingEngine, path, old_str, new_str, expected, model):
    """Apply a string replacement to PATH, healing it if it does not match."""
    tools = ToolCollection(EditTool(engine=engine, repo_dir=path.resolve().parent))
    result = asyncio.run(tools.run("str_replace_editor", {
        "command": "str_replace",
        "path": str(path.resolve()),
        "old_str": old_str,
        "new_str": new_str,
        "expected_replacements": expected,
        "model": model,
    }))
    print_result(result)
    if result.error:
        raise SystemExit(1)


@cli.command("apply-patch")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("patch_file", type=click.File("r"))
@click.option("--explanation", default="", help="What the patch is meant to change")
@click.pass_obj
def apply_patch(engine: HealingEngine, path, patch_file, explanation):
    """Apply the unified diff in PATCH_FILE to PATH."""
    tools = ToolCollection(ApplyPatchTool(engine=engine, repo_dir=path.resolve().parent))
    result = asyncio.run(tools.run("apply_patch", {
        "path": str(path.resolve()),
        "patch": patch_file.read(),
        "explanation": explanation,
    }))
    print_result(result)
    if result.error:
        raise SystemExit(1)


@cli.command()
@click.pass_obj
def flags(engine: HealingEngine):
    """Show the effective feature flags."""
    table = Table(title="Healing flags")
    table.add_column("Flag")
    table.add_column("Value")
    for key, value in sorted(engine.flags.all_flags().items()):
        table.add_row(key, str(value))
    console.print(table)


@cli.command()
@click.pass_obj
def check(engine: HealingEngine):
    """Test the correction backend and print engine health."""
    if engine.correction is None:
        console.print("[yellow]Correction backend disabled (--offline)[/yellow]")
    else:
        console.print(Panel(engine.correction.describe(), title="Correction service"))
        status = asyncio.run(engine.correction.test_connection())
        style = "green" if status["success"] else "red"
        console.print(f"[{style}]{json.dumps(status, indent=2)}[/{style}]")
    console.print(Panel(json.dumps(engine.health_check(), indent=2), title="Health"))


if __name__ == "__main__":
    cli()
