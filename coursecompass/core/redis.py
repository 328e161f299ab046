"""
Optional async Redis client for shared upload rate-limit counters. If redis_url is empty or the
connection fails, returns None and the limiter keeps its counters in-process.
"""
import logging
from typing import Any

from coursecompass.config import get_settings
from coursecompass.services.rate_limiter import UploadRateLimiter

logger = logging.getLogger(__name__)

_redis_client: Any = None
_rate_limiter: UploadRateLimiter | None = None


async def get_redis_client() -> Any:
    """Lazy singleton: one async Redis client or None if disabled/unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    url = (get_settings().redis_url or "").strip()
    if not url:
        return None
    try:
        from redis.asyncio import Redis
        client = Redis.from_url(url, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info("Redis rate limiter connected: %s", url.split("@")[-1] if "@" in url else url)
        return _redis_client
    except Exception as e:
        logger.warning("Redis unavailable (rate limits kept in-process): %s", e, exc_info=False)
        return None


async def get_upload_rate_limiter() -> UploadRateLimiter:
    """Process-wide limiter built from settings on first use."""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        client = await get_redis_client()
        _rate_limiter = UploadRateLimiter(
            settings.upload_rate_limit,
            settings.upload_rate_window_seconds,
            redis_client=client,
        )
    return _rate_limiter


async def close_redis() -> None:
    """Graceful shutdown: close Redis connection."""
    global _redis_client, _rate_limiter
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.warning("Redis close error: %s", e)
        _redis_client = None
    _rate_limiter = None
