"""Background workers supporting async processing."""

from .reward_expiration import RewardExpirationWorker  # noqa: F401
