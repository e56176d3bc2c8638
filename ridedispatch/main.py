import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from ridedispatch.api.dispatch import router as dispatch_router
from ridedispatch.api.drivers import router as drivers_router
from ridedispatch.api.health import router as health_router
from ridedispatch.api.ws import router as ws_router
from ridedispatch.config import settings
from ridedispatch.redis_client import create_redis, set_redis
from ridedispatch.tasks.offer_sweep import run_sweep_loop

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    redis_client = create_redis()
    set_redis(redis_client)
    task = None
    if settings.ENABLE_OFFER_SWEEPER:
        task = asyncio.create_task(run_sweep_loop())
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        set_redis(None)
        await redis_client.aclose()


app = FastAPI(title="ride-dispatch", version="0.1.0", lifespan=lifespan)
app.include_router(health_router, prefix="/api")
app.include_router(drivers_router, prefix="/api")
app.include_router(dispatch_router, prefix="/api")
app.include_router(ws_router)


@app.exception_handler(RedisError)
async def redis_error_handler(request: Request, exc: RedisError):
    logger.error("Redis failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Store unavailable"})


@app.get("/api")
def api_root():
    return {"message": "ride-dispatch API"}
