"""
Portal data layer - FastAPI shell

Administrative cache operations and the platform signal inputs
(connectivity, foreground) reported by the mobile client.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from pydantic import BaseModel

from config.settings import settings
from portal.data_context import get_data_context, reset_data_context

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger("portal.main")

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Portal Data Layer"


class SignalUpdate(BaseModel):
    """New state reported by a platform signal."""
    value: bool


@asynccontextmanager
async def lifespan(_: FastAPI):
    get_data_context()
    yield
    await get_data_context().close()
    reset_data_context()


app = FastAPI(
    title=APP_NAME,
    description="Cached, coordinated access to portal data",
    version=APP_VERSION,
    lifespan=lifespan,
)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


@app.get("/cache/stats")
def cache_stats() -> Dict[str, Any]:
    """Get cache statistics."""
    return get_data_context().get_cache_stats()


@app.post("/cache/refresh")
async def refresh_all() -> Dict[str, Any]:
    """Clear the cache and re-run every registered refresh."""
    triggered = await get_data_context().refresh_all_data()
    return {"scope": "all", "triggered": triggered}


@app.post("/cache/refresh/high-priority")
async def refresh_high_priority() -> Dict[str, Any]:
    triggered = await get_data_context().refresh_high_priority()
    return {"scope": "high-priority", "triggered": triggered}


@app.post("/cache/refresh/{prefix}")
async def refresh_prefix(prefix: str) -> Dict[str, Any]:
    """Invalidate and re-run everything under a key prefix."""
    triggered = await get_data_context().refresh_by_prefix(prefix)
    return {"scope": prefix, "triggered": triggered}


@app.delete("/cache")
def clear_cache() -> Dict[str, Any]:
    """Clear all cached data."""
    return {"cleared": get_data_context().clear_all_cache()}


@app.delete("/cache/{prefix}")
def invalidate_prefix(prefix: str) -> Dict[str, Any]:
    """Invalidate one key, or every key under a prefix."""
    return {"cleared": get_data_context().invalidate(prefix)}


@app.post("/signals/connectivity")
async def connectivity_changed(update: SignalUpdate) -> Dict[str, Any]:
    """Client reports a connectivity change; offline -> online refreshes everything."""
    context = get_data_context()
    context.connectivity.push(update.value)
    return {"is_online": context.ambient.is_online}


@app.post("/signals/foreground")
async def foreground_changed(update: SignalUpdate) -> Dict[str, Any]:
    """Client reports an app lifecycle change; background -> foreground refreshes high priority data."""
    context = get_data_context()
    context.lifecycle.push(update.value)
    return {"is_foreground": context.ambient.is_foreground}
