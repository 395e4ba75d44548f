from .sdk.registry import EntrypointRegistry, rollout_entrypoint
from .sdk.rollout.errors import (
    ConnectivityError,
    DiscoveryError,
    ProtocolError,
    RolloutError,
    WorkerBusyError,
    WorkerError,
)
from .sdk.tracing import observe
from .version import __version__

__all__ = [
    "ConnectivityError",
    "DiscoveryError",
    "EntrypointRegistry",
    "ProtocolError",
    "RolloutError",
    "WorkerBusyError",
    "WorkerError",
    "__version__",
    "observe",
    "rollout_entrypoint",
]
