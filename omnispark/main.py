import os
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from . import metrics
from .auth_middleware import SharedSecretMiddleware
from .config import GenerationConfig
from .pipeline.errors import GenerationError
from .pipeline.routes import (
    AppState,
    config_router,
    generation_error_handler,
    library_router,
    product_router,
    session_router,
)
from .pipeline.storage import MediaCache, StorageBackend, get_backend

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("OmniSpark starting up...")
    metrics.set_gauge("start_time", time.time())
    yield
    logger.info("OmniSpark shutting down...")


def create_app(
    config: Optional[GenerationConfig] = None,
    backend: Optional[StorageBackend] = None,
    state: Optional[AppState] = None,
) -> FastAPI:
    """Build the API. Tests pass their own state; production reads the environment."""
    if state is None:
        config = config or GenerationConfig.from_env()
        state = AppState(
            config,
            backend or get_backend(config.data_dir),
            MediaCache(config.data_dir / "media"),
        )

    app = FastAPI(title="OmniSpark", lifespan=lifespan)
    app.state.omnispark = state
    app.add_middleware(SharedSecretMiddleware)
    app.add_exception_handler(GenerationError, generation_error_handler)

    app.include_router(session_router)
    app.include_router(library_router)
    app.include_router(product_router)
    app.include_router(config_router)
    app.mount("/media", StaticFiles(directory=state.media_cache.root), name="media")

    @app.get("/health")
    def health_check():
        """Verify the service is running and keys are configured."""
        current = state.config
        return {
            "status": "ok",
            "text_key_set": current.has_key("text"),
            "image_key_set": current.has_key("image"),
            "video_key_set": current.has_key("video"),
            "supabase_url_set": bool(os.environ.get("SUPABASE_URL", "")),
            "sessions": len(state.sessions),
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all generation metrics."""
        metrics.set_gauge("active_sessions", len(state.sessions))
        metrics.set_gauge("library_assets", len(state.asset_library.assets()))
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("omnispark.main:app", host="0.0.0.0", port=port, reload=True)
