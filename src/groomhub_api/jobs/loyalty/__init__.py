"""Loyalty job exports."""

from .expiration import run_reward_expiration  # noqa: F401

__all__ = ["run_reward_expiration"]
