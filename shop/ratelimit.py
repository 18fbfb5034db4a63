"""
Shop Service — レート制限ミドルウェア

固定ウィンドウ方式。Redis の INCR + EXPIRE で
「クライアント IP × パス」ごとのリクエスト数を数える。

    key = ratelimit:{client_ip}:{path}

Redis に繋がらないときは制限せずに通す。
"""

import logging

import redis.asyncio as aioredis
from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

EXEMPT_PATHS = frozenset({"/health"})


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def rate_limit(request: Request, call_next):
    state = request.app.state
    settings = state.settings
    if not settings.ratelimit_enabled or state.redis is None or request.url.path in EXEMPT_PATHS:
        return await call_next(request)

    key = f"ratelimit:{_client_ip(request)}:{request.url.path}"
    try:
        count = await state.redis.incr(key)
        if count == 1:
            await state.redis.expire(key, settings.ratelimit_period)
        ttl = await state.redis.ttl(key)
    except aioredis.RedisError:
        logger.warning("Rate limiter unavailable, admitting request")
        return await call_next(request)

    reset = ttl if ttl and ttl > 0 else settings.ratelimit_period
    remaining = max(settings.ratelimit_requests - count, 0)
    headers = {
        "X-RateLimit-Limit": str(settings.ratelimit_requests),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset),
    }

    if count > settings.ratelimit_requests:
        logger.info("Rate limit exceeded for %s", key)
        return JSONResponse(
            status_code=429,
            content={
                "detail": {
                    "code": "rate_limited",
                    "message": "Too many requests. Please try again later.",
                }
            },
            headers={**headers, "Retry-After": str(reset)},
        )

    response = await call_next(request)
    response.headers.update(headers)
    return response
