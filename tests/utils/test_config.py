from pathlib import Path

import pytest

import config
from config import clear_constant, get_constant, get_constants, set_constant
from utils.json_utils import extract_json_object, strip_code_fences


@pytest.fixture(autouse=True)
def reset_overrides():
    yield
    config._OVERRIDES.clear()


def test_module_value_is_default():
    assert get_constant("HEALING_MAX_RETRIES") == 3
    assert get_constant("NOT_A_CONSTANT", "fallback") == "fallback"


def test_environment_is_coerced_to_constant_type(monkeypatch):
    monkeypatch.setenv("HEALING_MAX_RETRIES", "5")
    monkeypatch.setenv("HEALING_REQUEST_TIMEOUT", "12.5")
    monkeypatch.setenv("REPO_DIR", "/tmp/elsewhere")
    assert get_constant("HEALING_MAX_RETRIES") == 5
    assert get_constant("HEALING_REQUEST_TIMEOUT") == 12.5
    assert get_constant("REPO_DIR") == Path("/tmp/elsewhere")


def test_invalid_environment_value_is_ignored(monkeypatch):
    monkeypatch.setenv("HEALING_MAX_RETRIES", "lots")
    assert get_constant("HEALING_MAX_RETRIES") == 3


def test_override_beats_environment(monkeypatch):
    monkeypatch.setenv("HEALING_MODEL", "openai/gpt-4o")
    set_constant("HEALING_MODEL", "anthropic/claude-3-haiku")
    assert get_constant("HEALING_MODEL") == "anthropic/claude-3-haiku"
    clear_constant("HEALING_MODEL")
    assert get_constant("HEALING_MODEL") == "openai/gpt-4o"


def test_get_constants_lists_upper_case_names():
    constants = get_constants()
    assert "HEALING_TEMPERATURE" in constants
    assert "_OVERRIDES" not in constants


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences("  plain  ") == "plain"


def test_extract_json_object_skips_noise():
    assert extract_json_object('Answer: {not json} then {"a": {"b": 2}} trailing') == {"a": {"b": 2}}
    assert extract_json_object("no braces at all") is None
