from typing import Any

from fastapi import APIRouter, Depends

from ridedispatch.redis_client import get_redis

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(redis: Any = Depends(get_redis)):
    """Liveness plus a Redis round trip; Redis errors surface as 503."""
    await redis.ping()
    return {"status": "ok"}
