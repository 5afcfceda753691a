# badbingo/main.py
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import LOG_LEVEL, SWEEP_INTERVAL_SECONDS
from .errors import EngineError
from .routes.steals import router as steals_router
from .routes.sweeps import router as sweeps_router
from .routes.wagers import router as wagers_router
from .routes.wallet import router as wallet_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    sweeper_task = None
    if SWEEP_INTERVAL_SECONDS > 0:
        from .sweeps import run_sweeper
        sweeper_task = asyncio.create_task(run_sweeper(SWEEP_INTERVAL_SECONDS))
        logger.info("Background sweeper started")
    yield
    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
        logger.info("Background sweeper stopped")


app = FastAPI(title="Bad Bingo Engine API", version="0.1.0", lifespan=lifespan)
app.include_router(wallet_router)
app.include_router(wagers_router)
app.include_router(steals_router)
app.include_router(sweeps_router)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/healthz")
def healthz():
    return {"ok": "true"}
