from typing import TYPE_CHECKING, Any, Iterable, Optional

if TYPE_CHECKING:
    from resource_reconciler.models import ResourceHandle, StatusSnapshot


class WaitError(Exception):
    """Base class for every terminal outcome of a wait or reconcile run"""

    def __init__(
        self,
        message: str,
        handle: Optional["ResourceHandle"] = None,
        last_snapshot: Optional["StatusSnapshot"] = None,
        elapsed_time: float = 0.0,
        polls: int = 0,
    ):
        self.handle = handle
        self.last_snapshot = last_snapshot
        self.elapsed_time = elapsed_time
        self.polls = polls
        super().__init__(message)

    @property
    def last_status(self) -> Optional[str]:
        if self.last_snapshot is None:
            return None
        return self.last_snapshot.status


class WaitSpecError(WaitError):
    """Raised for an inconsistent WaitSpec, before any probe is issued"""


class NotFoundTerminalError(WaitError):
    pass


class UnexpectedStateError(WaitError):
    def __init__(self, message: str, status: str, expected: Iterable[str], **kwargs: Any):
        self.status = status
        self.expected = sorted(expected)
        super().__init__(message, **kwargs)


class WaitTimeoutError(WaitError, TimeoutError):
    pass


class FatalError(WaitError):
    """A non-retryable remote error; the cause is kept on ``__cause__``"""


class WaitCancelledError(WaitError):
    pass


class RemoteAPIError(Exception):
    """An error response returned by the control plane"""

    def __init__(self, code: str, message: str = "", status: Optional[int] = None):
        self.code = code
        self.message = message
        self.status = status
        super().__init__(f"{code}: {message}" if message else code)
