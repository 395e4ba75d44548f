from rollout_dev.sdk.client.async_client import AsyncRolloutClient

__all__ = ["AsyncRolloutClient"]
