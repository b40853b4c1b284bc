"""Exception hierarchy shared by the snapshotter, resolver, recorder and executor."""

_SESSION_ERROR_MARKERS = (
    "Session with given id not found",
    "Session closed",
    "Target closed",
    "-32001",
)


class AutomationError(Exception):
    """Base class for every failure surfaced by axreplay."""

    error_type = "automation_error"


class ElementNotFound(AutomationError):
    error_type = "element_not_found"

    def __init__(self, identifier: str, timeout: float | None = None):
        self.identifier = identifier
        self.timeout = timeout
        msg = f"element not found: {identifier}"
        if timeout is not None:
            msg += f" (timeout {timeout:g}s)"
        super().__init__(msg)


class StaleReference(AutomationError):
    """A RefID could not be mapped back to a live element."""

    error_type = "stale_reference"

    def __init__(self, ref_id: str, reason: str = ""):
        self.ref_id = ref_id
        msg = f"reference {ref_id} is stale"
        if reason:
            msg += f": {reason}"
        super().__init__(msg + "; capture a fresh snapshot and retry")


class SessionInvalid(AutomationError):
    error_type = "session_invalid"


class OperationTimeout(AutomationError):
    error_type = "timeout"

    def __init__(self, operation: str, timeout: float, detail: str = ""):
        self.operation = operation
        self.timeout = timeout
        msg = f"{operation} timed out after {timeout:g}s"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class RecoveredPanic(AutomationError):
    """An unexpected driver failure caught at the driver boundary."""

    error_type = "recovered_panic"


class PartialSyncLoss(AutomationError):
    """One surface could not be read during a recording sync tick."""

    error_type = "partial_sync_loss"


class EmptyTree(AutomationError):
    error_type = "empty_tree"


class AccessibilityUnavailable(AutomationError):
    error_type = "accessibility_unavailable"


class InjectionFailed(AutomationError):
    error_type = "injection_failed"


class RecordingStateError(AutomationError):
    """Recorder start/stop called in the wrong state."""

    error_type = "recording_state"


class CDPError(RuntimeError):
    """The browser answered a protocol command with an error payload."""

    def __init__(self, method: str, error: dict | str):
        self.method = method
        self.error = error
        super().__init__(f"CDP {method} error: {error}")

    def is_session_error(self) -> bool:
        return is_session_error(self)


def is_session_error(exc: BaseException | None) -> bool:
    """True when *exc* means the page's CDP session is gone."""
    if exc is None:
        return False
    if isinstance(exc, SessionInvalid):
        return True
    text = str(exc)
    return any(marker in text for marker in _SESSION_ERROR_MARKERS)
