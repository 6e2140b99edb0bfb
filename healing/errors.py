from typing import List, Optional


class HealingError(Exception):
    """Base class for errors raised by the healing engine."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def __str__(self):
        return self.message


# ---------------------------------------------------------------------------
# String replacement errors
# ---------------------------------------------------------------------------


class NoMatchError(HealingError):
    """The search text does not occur in the document.

    This is the only application error that may trigger string healing.
    """

    def __init__(self, search_string: str, file_content: str, message: Optional[str] = None):
        self.search_string = search_string
        self.file_content = file_content
        super().__init__(message or "No match found for replacement")


class AmbiguousMatchError(HealingError):
    """The search text occurs more often than expected. Never healed."""

    def __init__(self, search_string: str, occurrences: int, line_numbers: Optional[List[int]] = None):
        self.search_string = search_string
        self.occurrences = occurrences
        self.line_numbers = line_numbers or []
        message = f"Multiple matches found ({occurrences}); make old_str more specific."
        if self.line_numbers:
            message += " Matches at lines: " + ", ".join(str(n) for n in self.line_numbers)
        super().__init__(message)


# ---------------------------------------------------------------------------
# Patch errors
# ---------------------------------------------------------------------------


class PatchBuildError(HealingError):
    """A patch could not be turned into a commit."""


class PatchFormatError(PatchBuildError):
    """The patch text carries no usable file changes."""


class PositionalApplyError(PatchBuildError):
    """A context or deletion line does not match the document at its position."""

    def __init__(self, kind: str, line_number: int, expected: str, actual: Optional[str]):
        self.kind = kind
        self.line_number = line_number
        self.expected = expected
        self.actual = actual
        label = "Context" if kind == "context" else "Deletion"
        super().__init__(f"{label} mismatch at line {line_number}")


class HealedError(HealingError):
    """A healed patch was produced but still failed to apply."""

    def __init__(self, original_error: Exception, healed_error: Exception, healed_patch: str):
        self.original_error = original_error
        self.healed_error = healed_error
        self.healed_patch = healed_patch
        super().__init__(
            f"Patch healing failed: original error: {original_error}; "
            f"healed patch error: {healed_error}"
        )


# ---------------------------------------------------------------------------
# Correction service errors
# ---------------------------------------------------------------------------


class CorrectionServiceError(HealingError):
    """The correction backend failed, timed out, or answered with an invalid payload."""

    def __init__(self, message: str, kind: str = "other"):
        self.kind = kind
        super().__init__(message)


class HealingCancelledError(HealingError):
    """The caller cancelled a healing invocation."""

    def __init__(self, message: str = "Healing cancelled"):
        super().__init__(message)
