"""Job that expires free-service rewards left unredeemed past the configured window."""

# meta: job: loyalty-reward-expiration

from __future__ import annotations

import datetime as dt
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from groomhub_api.services.loyalty import RedemptionService

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def run_reward_expiration(
    *,
    session_factory: SessionFactory,
    reference_time: dt.datetime | None = None,
) -> Dict[str, Any]:
    """Expire stale pending rewards and report what changed."""

    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    now = reference_time or dt.datetime.now(dt.timezone.utc)
    async with session as managed_session:
        service = RedemptionService(managed_session)
        expired = await service.expire_stale(reference_time=now)

    summary = {"expired_rewards": expired, "reference_time": now.isoformat()}
    logger.bind(summary=summary).info("Loyalty reward expiration sweep completed")
    return summary
