from __future__ import annotations
import logging
import redis.asyncio as redis
from .config import get_settings

logger = logging.getLogger(__name__)
_settings = get_settings()
_r: redis.Redis | None = None

def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r

async def ping_redis() -> bool:
    try:
        r = get_redis()
        pong = await r.ping()
        return bool(pong)
    except Exception:
        logger.warning("redis not reachable at %s", _settings.redis_url)
        return False

# ---- Simple fixed-window rate limit per IP/route ----
async def allow_request(ip: str, route_key: str) -> bool:
    """
    Fixed window: increment a counter key; allow if <= max.
    Fails open when redis is down so check-ins keep working.
    """
    if not _settings.rl_enabled:
        return True
    r = get_redis()
    key = f"rl:{route_key}:{ip}"
    try:
        pipe = r.pipeline()
        pipe.incr(key)
        pipe.expire(key, _settings.rl_window_seconds)
        count, _ = await pipe.execute()
    except redis.RedisError:
        logger.warning("rate limiter unavailable, allowing %s", route_key)
        return True
    return int(count) <= _settings.rl_max_reqs
