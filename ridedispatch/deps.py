"""Shared dependencies: services bound to the application's Redis client."""
from typing import Any

from fastapi import Depends

from ridedispatch.redis_client import get_redis
from ridedispatch.services.dispatcher import Dispatcher
from ridedispatch.services.presence_store import PresenceStore


async def get_presence_store(redis: Any = Depends(get_redis)) -> PresenceStore:
    return PresenceStore(redis)


async def get_dispatcher(redis: Any = Depends(get_redis)) -> Dispatcher:
    return Dispatcher(redis)
