"""
Failure taxonomy for generation calls.

Provider adapters convert transport and HTTP failures into these types so the
session layer can turn them into a status message plus a next action.
"""

from typing import Optional

# Next actions surfaced to the caller
RETRY = "retry"
REAUTHENTICATE = "reselect_credentials"
ADJUST_SELECTION = "adjust_selection"

PERMISSION_MARKERS = ("PERMISSION_DENIED", "Requested entity was not found")


class GenerationError(Exception):
    """Base class for every failure raised by a generation component."""

    kind = "generation_error"
    next_action: Optional[str] = RETRY

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ProviderError(GenerationError):
    """The provider call failed for a generic, retryable reason."""

    kind = "provider_error"


class PermissionDeniedError(GenerationError):
    """The provider rejected the active credential."""

    kind = "permission_denied"
    next_action = REAUTHENTICATE


class EmptyResultError(GenerationError):
    """The call succeeded but returned no usable payload."""

    kind = "empty_result"


class GenerationEmptyResult(EmptyResultError):
    pass


class NoImageProduced(EmptyResultError):
    pass


class VideoGenerationFailed(EmptyResultError):
    pass


class ParseFailure(GenerationError):
    """Structured output was malformed or did not match the schema."""

    kind = "parse_failure"


class VideoTimeoutError(GenerationError):
    kind = "timeout"


class OperationCancelled(GenerationError):
    kind = "cancelled"
    next_action = None


class SelectionError(GenerationError):
    """The requested action is not valid for the current selection."""

    kind = "selection_error"
    next_action = ADJUST_SELECTION


def is_permission_failure(status_code: Optional[int], body: str = "") -> bool:
    if status_code == 403:
        return True
    return any(marker in body for marker in PERMISSION_MARKERS)
