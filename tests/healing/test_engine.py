import asyncio
import json

import pytest

from healing import (
    AmbiguousMatchError,
    EditParams,
    EditRequest,
    HealedError,
    HealingFlags,
    NoMatchError,
    PatchDocument,
    PositionalApplyError,
    SourceModel,
    Strategy,
)
from healing.engine import HEALING_DISABLED
from healing.telemetry import APPLY_PATCH_EVENT, REPLACE_STRING_EVENT, STRING_HEAL_EVENT, emit_event
from healing.text_utils import count_occurrences


def make_applier(content):
    """An edit applier over ``content`` that raises like a real editor would."""
    calls = []

    async def apply(params: EditParams):
        calls.append(params)
        occurrences = count_occurrences(content, params.old_text)
        if occurrences == 0:
            raise NoMatchError(params.old_text, content)
        if occurrences > 1:
            raise AmbiguousMatchError(params.old_text, occurrences)
        return content.replace(params.old_text, params.new_text)

    return apply, calls


# ---------------------------------------------------------------------------
# heal_string
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_heal_string_emits_exactly_one_event(make_engine, telemetry):
    engine = make_engine()
    outcome = await engine.heal_string("a\\nb", "X\\nY", "a\nb\n", model="gemini-2.5-pro")

    assert outcome.strategy is Strategy.UNESCAPE
    events = telemetry.named(STRING_HEAL_EVENT)
    assert len(telemetry.events) == 1
    assert events[0]["outcome"] == "healingSucceeded"
    assert events[0]["model"] == "gemini-2.5-pro"
    assert events[0]["strategy"] == "unescape"
    assert events[0]["healing_attempts"] == len(outcome.attempts)


@pytest.mark.asyncio
async def test_disabled_flag_returns_failure_without_requests(scripted_client, make_engine, telemetry):
    """No attempts are made and no correction request is even built."""
    client = scripted_client()
    engine = make_engine(client, flags=HealingFlags.disabled())
    outcome = await engine.heal_string("missing", "new", "content\n")

    assert outcome.success is False
    assert outcome.attempts == ()
    assert outcome.error == HEALING_DISABLED
    assert client.requests == []
    assert telemetry.named(STRING_HEAL_EVENT)[0]["heal_error"] == HEALING_DISABLED


@pytest.mark.asyncio
async def test_heal_string_cancellation_returns_failure(scripted_client, make_engine):
    cancelled = asyncio.Event()
    cancelled.set()
    engine = make_engine(scripted_client())
    outcome = await engine.heal_string("missing", "new", "content\n", cancellation=cancelled)
    assert outcome.success is False
    assert "cancelled" in outcome.error.lower()


@pytest.mark.asyncio
async def test_healer_calls_share_one_limiter(make_engine):
    engine = make_engine(flags=HealingFlags({"healing_concurrent_limit": 2}))
    assert engine.limiter is engine.limiter
    assert engine.limiter._value == 2


@pytest.mark.asyncio
async def test_concurrent_invocations_are_independent(make_engine):
    engine = make_engine()
    contents = [f"value_{i} = 1\n" for i in range(10)]
    outcomes = await asyncio.gather(*(
        engine.heal_string(f"value_{i} = 1\\n", f"value_{i} = 2\\n", content)
        for i, content in enumerate(contents)
    ))
    assert all(o.success for o in outcomes)
    assert engine.metrics()["healing"]["total_healings"] == 10


# ---------------------------------------------------------------------------
# apply_edit_with_healing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_clean_edit_is_applied_without_healing(make_engine, telemetry):
    content = "alpha\nbeta\n"
    apply, calls = make_applier(content)
    request = EditRequest(old_text="beta", new_text="gamma")
    result, outcome = await make_engine().apply_edit_with_healing(apply, request, content)

    assert result == "alpha\ngamma\n"
    assert outcome.healing_applied is False
    assert len(calls) == 1
    assert telemetry.named(REPLACE_STRING_EVENT)[0]["outcome"] == "normalExecution"


@pytest.mark.asyncio
async def test_no_match_is_healed_and_reapplied(make_engine, telemetry):
    content = 'print("hi")\n'
    apply, calls = make_applier(content)
    request = EditRequest(
        old_text='print(\\"hi\\")',
        new_text='echo(\\"bye\\")!',
        source_model=SourceModel.parse("gemini-2.5-pro"),
    )
    result, outcome = await make_engine().apply_edit_with_healing(apply, request, content)

    assert result == 'echo("bye")!\n'
    assert outcome.strategy is Strategy.UNESCAPE
    assert len(calls) == 2, "The edit is retried once with healed parameters"
    event = telemetry.named(REPLACE_STRING_EVENT)[0]
    assert event["outcome"] == "healingSucceeded"
    assert event["strategy"] == "unescape"
    assert len(telemetry.events) == 1


@pytest.mark.asyncio
async def test_unhealable_edit_reraises_original_error(make_engine, telemetry):
    content = "alpha\n"
    apply, _ = make_applier(content)
    request = EditRequest(old_text="omega", new_text="psi")
    with pytest.raises(NoMatchError) as excinfo:
        await make_engine().apply_edit_with_healing(apply, request, content)
    assert excinfo.value.search_string == "omega", "The caller sees the original error"
    event = telemetry.named(REPLACE_STRING_EVENT)[0]
    assert event["outcome"] == "healingFailed"
    assert event["application_error"] == "No match found for replacement"


@pytest.mark.asyncio
async def test_ambiguous_match_bypasses_healing(scripted_client, make_engine):
    client = scripted_client()
    content = "x = 1\nx = 1\n"
    apply, calls = make_applier(content)
    with pytest.raises(AmbiguousMatchError):
        await make_engine(client).apply_edit_with_healing(apply, EditRequest(old_text="x = 1", new_text="y"), content)
    assert len(calls) == 1
    assert client.requests == []


@pytest.mark.asyncio
async def test_disabled_flag_reraises_without_healing(make_engine):
    content = 'print("hi")\n'
    apply, calls = make_applier(content)
    request = EditRequest(old_text='print(\\"hi\\")', new_text="x")
    with pytest.raises(NoMatchError):
        await make_engine(flags=HealingFlags.disabled()).apply_edit_with_healing(apply, request, content)
    assert len(calls) == 1


# ---------------------------------------------------------------------------
# heal_patch
# ---------------------------------------------------------------------------

DOC = PatchDocument(uri="src/app.py", content="a = 1\nb = 2\n")
CLEAN = "--- a/src/app.py\n+++ b/src/app.py\n@@ -1,2 +1,2 @@\n a = 1\n-b = 2\n+b = 3\n"
DRIFTED = CLEAN.replace(" a = 1", " a = 0")


@pytest.mark.asyncio
async def test_heal_patch_event_for_clean_patch(make_engine, telemetry):
    outcome = await make_engine().heal_patch(CLEAN, DOC)
    assert outcome.commit.content == "a = 1\nb = 3\n"
    event = telemetry.named(APPLY_PATCH_EVENT)[0]
    assert event["file"] == "app.py"
    assert event["healed"] is False
    assert event["success"] is True


@pytest.mark.asyncio
async def test_heal_patch_event_for_healed_failure(scripted_client, make_engine, telemetry, reply):
    client = scripted_client(reply(correctedPatch=DRIFTED.replace("a = 0", "a = 5")))
    with pytest.raises(HealedError):
        await make_engine(client).heal_patch(DRIFTED, DOC)
    event = telemetry.named(APPLY_PATCH_EVENT)[0]
    assert event["healed"] is True
    assert event["success"] is False
    assert "Context mismatch" in event["error"]


@pytest.mark.asyncio
async def test_heal_patch_without_backend_reraises(make_engine, telemetry):
    with pytest.raises(PositionalApplyError):
        await make_engine().heal_patch(DRIFTED, DOC)
    assert telemetry.named(APPLY_PATCH_EVENT)[0]["healed"] is False


# ---------------------------------------------------------------------------
# Unexpected backend failures
# ---------------------------------------------------------------------------


def garbled_body():
    return json.JSONDecodeError("Expecting value", "<html>", 0)


@pytest.mark.asyncio
async def test_garbled_backend_body_never_escapes_heal_string(scripted_client, make_engine, telemetry):
    outcome = await make_engine(scripted_client(garbled_body())).heal_string("nothing like this", "x", "some content\n")
    assert outcome.success is False
    assert telemetry.named(STRING_HEAL_EVENT)[0]["outcome"] == "healingFailed"


@pytest.mark.asyncio
async def test_garbled_backend_body_reraises_original_edit_error(scripted_client, make_engine):
    content = "alpha\n"
    apply, calls = make_applier(content)
    request = EditRequest(old_text="omega", new_text="psi")
    with pytest.raises(NoMatchError):
        await make_engine(scripted_client(garbled_body())).apply_edit_with_healing(apply, request, content)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_garbled_backend_body_reraises_original_patch_error(scripted_client, make_engine):
    engine = make_engine(scripted_client(garbled_body()))
    with pytest.raises(PositionalApplyError):
        await engine.heal_patch(DRIFTED, DOC)
    assert engine.correction.get_metrics()["errors_by_type"] == {"other": 1}


# ---------------------------------------------------------------------------
# Telemetry and health
# ---------------------------------------------------------------------------


def test_telemetry_sink_failure_is_swallowed():
    class BrokenSink:
        def send_event(self, name, properties):
            raise RuntimeError("sink offline")

    emit_event(BrokenSink(), "event", {})


@pytest.mark.asyncio
async def test_sink_failure_does_not_change_result(make_engine):
    class BrokenSink:
        def send_event(self, name, properties):
            raise RuntimeError("sink offline")

    engine = make_engine()
    engine.telemetry = BrokenSink()
    outcome = await engine.heal_string("a\\nb", "X\\nY", "a\nb\n")
    assert outcome.success is True


@pytest.mark.asyncio
async def test_health_check_flags_low_success_rate(make_engine):
    engine = make_engine()
    assert engine.health_check()["status"] == "healthy"
    for _ in range(5):
        await engine.heal_string("missing", "new", "content\n")
    health = engine.health_check()
    assert health["status"] == "error"
    assert health["metrics"]["failed_healings"] == 5


def test_metrics_include_correction_snapshot(scripted_client, make_engine):
    engine = make_engine(scripted_client())
    assert set(engine.metrics()) == {"healing", "correction"}
    assert set(make_engine().metrics()) == {"healing"}
