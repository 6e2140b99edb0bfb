import logging
import os
from typing import Any, Dict, List, Protocol, Tuple, runtime_checkable

logger = logging.getLogger(__name__)

STRING_HEAL_EVENT = "string_heal"
REPLACE_STRING_EVENT = "replace_string_tool_invoked"
APPLY_PATCH_EVENT = "apply_patch_tool"


@runtime_checkable
class TelemetrySink(Protocol):
    def send_event(self, name: str, properties: Dict[str, Any]) -> None:
        ...


class LoggingTelemetrySink:
    """Writes each event to the log as a single line."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def send_event(self, name: str, properties: Dict[str, Any]) -> None:
        rendered = ", ".join(f"{k}={v}" for k, v in sorted(properties.items()))
        logger.log(self.level, f"telemetry {name}: {rendered}")


class RecordingTelemetrySink:
    """Keeps events in memory; used by tests and the CLI summary."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def send_event(self, name: str, properties: Dict[str, Any]) -> None:
        self.events.append((name, dict(properties)))

    def named(self, name: str) -> List[Dict[str, Any]]:
        return [props for event, props in self.events if event == name]


def sanitize_file_path(path: str) -> str:
    """Keep only the file name, capped at 50 characters."""
    if not path:
        return ""
    return os.path.basename(path.replace("\\", "/"))[:50]


def emit_event(sink: TelemetrySink, name: str, properties: Dict[str, Any]) -> None:
    """Send an event, logging and discarding any sink failure."""
    if sink is None:
        return
    try:
        sink.send_event(name, properties)
    except Exception as exc:
        logger.warning(f"Telemetry sink failed for event {name}: {exc}")
