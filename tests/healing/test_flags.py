import asyncio

import pytest

from healing import HealingFlags
from healing.flags import DEFAULT_HEALING_FLAGS, PRESETS


def test_defaults():
    flags = HealingFlags()
    assert flags.is_string_replace_healing_enabled() is True
    assert flags.is_patch_healing_enabled() is True
    assert flags.string_replace_max_attempts() == 3
    assert flags.patch_healing_timeout() == 15.0
    assert flags.concurrent_limit() == 3


def test_resolution_order_override_then_flag_then_default():
    flags = HealingFlags({"string_replace_healing_timeout": 20.0})
    assert flags.get_treatment_variable("no_such_flag", "fallback") == "fallback"
    assert flags.string_replace_timeout() == 20.0

    flags.set_override("string_replace_healing_timeout", 1.0)
    assert flags.string_replace_timeout() == 1.0
    flags.clear_override("string_replace_healing_timeout")
    assert flags.string_replace_timeout() == 20.0


def test_override_context_manager_restores_state():
    flags = HealingFlags()
    flags.set_override("healing_concurrent_limit", 7)
    with flags.override(string_replace_healing=False, healing_concurrent_limit=1):
        assert flags.is_string_replace_healing_enabled() is False
        assert flags.concurrent_limit() == 1
    assert flags.is_string_replace_healing_enabled() is True
    assert flags.concurrent_limit() == 7


def test_concurrent_limit_is_at_least_one():
    assert HealingFlags({"healing_concurrent_limit": 0}).concurrent_limit() == 1


def test_model_fix_flags():
    flags = HealingFlags({"claude_formatting_fix": False})
    assert flags.is_model_fix_enabled("claude") is False
    assert flags.is_model_fix_enabled("gemini") is True
    assert flags.is_model_fix_enabled("mistral") is True, "Unknown families stay enabled"
    assert flags.is_model_fix_enabled(None) is True


def test_remote_merge_ignores_unknown_keys():
    flags = HealingFlags()
    flags.merge_remote_flags({"patch_healing_max_attempts": 5, "launch_missiles": True})
    assert flags.patch_healing_max_attempts() == 5
    assert "launch_missiles" not in flags.all_flags()


@pytest.mark.parametrize("name", sorted(PRESETS))
def test_presets_only_use_known_keys(name):
    assert set(PRESETS[name]().all_flags()) == set(DEFAULT_HEALING_FLAGS)


def test_disabled_preset():
    flags = HealingFlags.disabled()
    assert flags.is_string_replace_healing_enabled() is False
    assert flags.is_patch_healing_enabled() is False


def test_from_env(monkeypatch):
    monkeypatch.setenv("HEALING_FLAG_STRING_REPLACE_HEALING", "false")
    monkeypatch.setenv("HEALING_FLAG_PATCH_HEALING_TIMEOUT", "42.5")
    monkeypatch.setenv("HEALING_FLAG_HEALING_CONCURRENT_LIMIT", "not-a-number")
    flags = HealingFlags.from_env()
    assert flags.is_string_replace_healing_enabled() is False
    assert flags.patch_healing_timeout() == 42.5
    assert flags.concurrent_limit() == 3, "Invalid values fall back to the default"


@pytest.mark.asyncio
async def test_sync_once_merges_remote_values():
    async def provider():
        return {"healing_concurrent_limit": 9}

    flags = HealingFlags(remote_provider=provider)
    assert await flags.sync_once() is True
    assert flags.concurrent_limit() == 9


@pytest.mark.asyncio
async def test_sync_once_survives_provider_errors():
    async def provider():
        raise ConnectionError("flag service down")

    flags = HealingFlags(remote_provider=provider)
    assert await flags.sync_once() is False
    assert flags.concurrent_limit() == 3


@pytest.mark.asyncio
async def test_periodic_sync_runs_in_background():
    pulls = []

    async def provider():
        pulls.append(1)
        return {"patch_healing_max_attempts": len(pulls)}

    flags = HealingFlags(remote_provider=provider)
    task = flags.start_periodic_sync(first_delay=0, interval=0.01)
    assert task is not None
    await asyncio.sleep(0.05)
    await flags.stop_periodic_sync()
    assert len(pulls) >= 2
    assert flags.patch_healing_max_attempts() == len(pulls)


def test_periodic_sync_without_provider_is_noop():
    assert HealingFlags().start_periodic_sync() is None
