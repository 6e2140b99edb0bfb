import logging
import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

# Import all model constants
from models import *

# Load environment variables from .env file
load_dotenv()

# --- Path Constants ---
TOP_LEVEL_DIR = Path.cwd()
REPO_DIR = TOP_LEVEL_DIR / "repo"
LOGS_DIR = TOP_LEVEL_DIR / "logs"
LOG_FILE_APP = LOGS_DIR / "healing.log"

# --- Correction Backend ---
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
SITE_URL = "https://github.com/toolheal/toolheal"
SITE_NAME = "toolheal"

HEALING_MAX_RETRIES = 3  # valid range 1-10
HEALING_REQUEST_TIMEOUT = 30.0  # seconds, valid range 5-300
HEALING_TEMPERATURE = 0.1
HEALING_MAX_TOKENS = 2000
HEALING_MAX_CONTEXT_CHARS = 2000

# --- Logging Constants ---
LOG_LEVEL_CONSOLE = "INFO"
LOG_LEVEL_FILE = "DEBUG"

# --- Constants Management ---

_OVERRIDES: Dict[str, Any] = {}


def _coerce(raw: str, like: Any) -> Any:
    """Convert an environment string to the type of the module constant."""
    if isinstance(like, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(like, int):
        return int(raw)
    if isinstance(like, float):
        return float(raw)
    if isinstance(like, Path):
        return Path(raw)
    return raw


def get_constant(name: str, default: Any = None) -> Any:
    """Resolve a constant: runtime override, then environment, then module value."""
    if name in _OVERRIDES:
        return _OVERRIDES[name]
    module_value = globals().get(name, default)
    raw = os.environ.get(name)
    if raw is not None:
        try:
            return _coerce(raw, module_value)
        except ValueError:
            logging.warning(f"Ignoring invalid value for {name}: {raw!r}")
    return module_value


def set_constant(name: str, value: Any) -> bool:
    _OVERRIDES[name] = value
    logging.info(f"Constant '{name}' set to '{value}'.")
    return True


def clear_constant(name: str) -> None:
    _OVERRIDES.pop(name, None)


def get_constants() -> Dict[str, Any]:
    """Return every upper-case constant with overrides applied."""
    names = [n for n in globals() if n.isupper() and not n.startswith("_")]
    return {name: get_constant(name) for name in names}
