import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from . import metrics  # noqa: E402
from .pipeline import monitor_router, project_router  # noqa: E402
from .pipeline.routes import get_monitor  # noqa: E402
from .tick_lock import get_redis  # noqa: E402

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
MONITOR_INTERVAL_SECONDS = float(os.getenv("MONITOR_INTERVAL_SECONDS", "30"))


async def _monitor_loop(interval: float):
    """In-process scheduler: one bulk tick every `interval` seconds."""
    while True:
        try:
            await get_monitor().tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Monitor loop tick failed: {e}", exc_info=True)
            metrics.record_error("monitor.loop", type(e).__name__, str(e))
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Orchestrator starting up...")
    metrics.set_gauge("start_time", time.time())

    loop_task = None
    if MONITOR_INTERVAL_SECONDS > 0:
        loop_task = asyncio.create_task(_monitor_loop(MONITOR_INTERVAL_SECONDS))
        logger.info(f"Monitor loop launched (every {MONITOR_INTERVAL_SECONDS:.0f}s)")
    else:
        logger.info("Monitor loop disabled - expecting an external cron on POST /monitor/tick")
    yield
    logger.info("Orchestrator shutting down...")
    if loop_task:
        loop_task.cancel()
        try:
            await loop_task
        except asyncio.CancelledError:
            pass


app = FastAPI(lifespan=lifespan)
app.include_router(project_router)
app.include_router(monitor_router)


@app.get("/health")
def health_check():
    """Verify the orchestrator is running and env vars are configured."""
    return {
        "status": "ok",
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL") or os.environ.get("NEXT_PUBLIC_SUPABASE_URL")),
        "kie_api_key_set": bool(os.environ.get("KIE_API_KEY")),
        "gemini_api_key_set": bool(os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")),
        "fal_key_set": bool(os.environ.get("FAL_KEY")),
        "redis_connected": get_redis() is not None,
        "monitor_interval_seconds": MONITOR_INTERVAL_SECONDS,
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all orchestrator metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("adclone.main:app", host="0.0.0.0", port=port)
