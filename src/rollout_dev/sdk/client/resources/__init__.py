from rollout_dev.sdk.client.resources.rollout import AsyncRollout
from rollout_dev.sdk.client.resources.sql import AsyncSql

__all__ = ["AsyncRollout", "AsyncSql"]
