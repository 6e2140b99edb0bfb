import pytest
from pathlib import Path

from healing import HealingEngine, HealingFlags, RecordingTelemetrySink
from tools import ApplyPatchTool, ToolCollection

SOURCE = "def add(a, b):\n    return a + b\n"
PATCH = """--- a/calc.py
+++ b/calc.py
@@ -1,2 +1,3 @@
 def add(a, b):
-    return a + b
+    total = a + b
+    return total
"""
DRIFTED = PATCH.replace(" def add(a, b):", " def add(x, y):")


@pytest.fixture
def calc_file(tmp_path: Path) -> Path:
    target = tmp_path / "calc.py"
    target.write_text(SOURCE)
    return target


def make_tool(tmp_path, make_service=None, client=None, telemetry=None):
    service = make_service(client) if client is not None else None
    engine = HealingEngine(correction=service, flags=HealingFlags(), telemetry=telemetry or RecordingTelemetrySink())
    return ApplyPatchTool(engine=engine, repo_dir=tmp_path)


@pytest.mark.asyncio
async def test_clean_patch_is_written(tmp_path: Path, calc_file: Path):
    tool = make_tool(tmp_path)
    result = await tool(path="calc.py", patch=PATCH)

    assert result.error is None, f"Unexpected error: {result.error}"
    assert "(+2 -1)" in result.output
    assert result.message is None
    assert calc_file.read_text() == "def add(a, b):\n    total = a + b\n    return total\n"


@pytest.mark.asyncio
async def test_drifted_patch_is_healed(tmp_path: Path, calc_file: Path, scripted_client, make_service, reply):
    client = scripted_client(reply(correctedPatch=PATCH))
    tool = make_tool(tmp_path, make_service, client)
    result = await tool(path="calc.py", patch=DRIFTED, explanation="Introduce a local variable")

    assert result.error is None, f"Unexpected error: {result.error}"
    assert result.message == "[healed: patch]"
    assert "return total" in calc_file.read_text()
    assert "Introduce a local variable" in client.requests[0].user_prompt


@pytest.mark.asyncio
async def test_failed_patch_leaves_file_untouched(tmp_path: Path, calc_file: Path, telemetry):
    tool = make_tool(tmp_path, telemetry=telemetry)
    result = await tool(path="calc.py", patch=DRIFTED)

    assert result.error == "Context mismatch at line 1"
    assert calc_file.read_text() == SOURCE
    assert telemetry.events[0][1]["success"] is False


@pytest.mark.asyncio
async def test_healed_error_is_reported(tmp_path: Path, calc_file: Path, scripted_client, make_service, reply):
    client = scripted_client(reply(correctedPatch=DRIFTED.replace("(x, y)", "(p, q)")))
    tool = make_tool(tmp_path, make_service, client)
    result = await tool(path="calc.py", patch=DRIFTED)

    assert "Patch healing failed" in result.error
    assert "Context mismatch at line 1" in result.output
    assert calc_file.read_text() == SOURCE


@pytest.mark.asyncio
async def test_missing_file(tmp_path: Path):
    result = await make_tool(tmp_path)(path="nope.py", patch=PATCH)
    assert "Path not found" in result.error


@pytest.mark.asyncio
async def test_collection_dispatches_by_name(tmp_path: Path, calc_file: Path):
    tools = ToolCollection(make_tool(tmp_path))
    result = await tools.run("apply_patch", {"path": "calc.py", "patch": PATCH})
    assert result.tool_name == "apply_patch"
    assert result.error is None

    missing = await tools.run("no_such_tool", {})
    assert "not found" in missing.error
    assert len(tools.to_params()) == 1
