"""Error types raised by the rollout dev loop."""


class RolloutError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConnectivityError(RolloutError):
    """Control channel dropped or stopped sending heartbeats. Always retried."""


class DiscoveryError(RolloutError):
    """The target could not be loaded or produced no usable metadata."""


class CleanupError(RolloutError):
    """Releasing a resource during shutdown failed."""


class WorkerError(RolloutError):
    """A run failed inside the worker process, or the worker died."""

    def __init__(
        self,
        message: str,
        stack: str | None = None,
        exit_code: int | None = None,
    ):
        super().__init__(message)
        self.stack = stack
        self.exit_code = exit_code

    def __str__(self) -> str:
        if self.exit_code is not None:
            return f"{self.message} (exit code {self.exit_code})"
        return self.message


class ProtocolError(WorkerError):
    """The worker broke the stdin/stdout protocol."""


class WorkerBusyError(WorkerError):
    """A run was requested while another worker process is still active."""
