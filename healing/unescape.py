import re
from typing import TYPE_CHECKING, Callable, Optional, Union

from .types import SourceModel

if TYPE_CHECKING:
    from .flags import HealingFlags

# one or more backslashes in front of an escapable character
_OVER_ESCAPED_RE = re.compile(r"\\+(n|t|r|'|\"|`|\\|\n)")

_REPLACEMENTS = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "'": "'",
    '"': '"',
    "`": "`",
    "\\": "\\",
    "\n": "\n",
}


def unescape_over_escaped(text: str) -> str:
    """Collapse escape sequences that were escaped once too often.

    ``"a\\\\nb"`` (a literal backslash-n) becomes ``"a\\nb"`` (a newline).
    """
    return _OVER_ESCAPED_RE.sub(lambda m: _REPLACEMENTS[m.group(1)], text)


def identity(text: str) -> str:
    return text


def is_gemini_model(model: Union[SourceModel, str, None]) -> bool:
    if isinstance(model, str):
        model = SourceModel.parse(model)
    return model is not None and "gemini" in model.family.lower()


def create_unescape_function(
    model: Union[SourceModel, str, None] = None,
    flags: Optional["HealingFlags"] = None,
) -> Callable[[str], str]:
    """Return the escape normalizer for ``model``, or identity when its fix is off."""
    if isinstance(model, str):
        model = SourceModel.parse(model)
    if flags is not None and not flags.is_model_fix_enabled(model.family if model else None):
        return identity
    return unescape_over_escaped
