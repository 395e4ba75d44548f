"""
Local development loop for rollout functions: control channel, record/replay
cache, and isolated worker processes.
"""

from rollout_dev.sdk.rollout.errors import (
    CleanupError,
    ConnectivityError,
    DiscoveryError,
    ProtocolError,
    RolloutError,
    WorkerBusyError,
    WorkerError,
)
from rollout_dev.sdk.rollout.types import WorkerConfig

__all__ = [
    "CleanupError",
    "ConnectivityError",
    "DiscoveryError",
    "ProtocolError",
    "RolloutError",
    "WorkerBusyError",
    "WorkerConfig",
    "WorkerError",
]
