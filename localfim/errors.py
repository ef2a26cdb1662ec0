from __future__ import annotations


class LocalFIMError(Exception):
    """Base class for errors raised by the supervisor and the inserter."""


class NotInstalledError(LocalFIMError):
    """The backend binary is missing or cannot be executed."""

    def __init__(self, binary: str, detail: str | None = None) -> None:
        message = f"{binary!r} is not installed or cannot be run"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.binary = binary


class ProbeError(LocalFIMError):
    """The daemon answered, but not in a way that means "running" or "stopped"."""


class LaunchFailedError(LocalFIMError):
    """The daemon could not be spawned or kept crashing past the restart limit."""


class LaunchCancelledError(LocalFIMError):
    """The launch was cancelled before (or after) the daemon became ready."""


class ProvisionError(LocalFIMError):
    """A model could not be provisioned; ``remedy`` is a command the user can run."""

    def __init__(self, message: str, remedy: str) -> None:
        super().__init__(message)
        self.remedy = remedy


class PullFailedError(ProvisionError):
    pass


class VerificationFailedError(ProvisionError):
    pass


class StreamError(LocalFIMError):
    """The completion stream reported an error or could not be decoded."""


class RequestTimeoutError(LocalFIMError):
    pass
