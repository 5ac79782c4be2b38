"""Background rate limit record cleanup task."""

import asyncio
import logging

from dcu_api.middleware.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


async def rate_limit_cleanup_loop(rate_limiter: RateLimiter, interval_seconds: float = 3600) -> None:
    """Periodic removal of stale rate limit records to bound storage growth."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            removed = await rate_limiter.cleanup()
            if removed > 0:
                logger.debug(f"Rate limiter cleanup: removed {removed} stale records")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Rate limiter cleanup error: {e}")
