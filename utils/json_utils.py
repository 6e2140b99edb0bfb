import json
import re
from typing import Any, Optional

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the stripped text if none."""
    if text is None:
        return ""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def extract_json_object(text: str) -> Optional[Any]:
    """Decode the first JSON object found in a possibly chatty response.

    Code fences are removed first, then decoding starts at every ``{`` until
    one of them yields a complete object. Returns None when nothing decodes.
    """
    body = strip_code_fences(text)
    decoder = json.JSONDecoder()
    start = body.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(body, start)
            return value
        except json.JSONDecodeError:
            start = body.find("{", start + 1)
    return None
