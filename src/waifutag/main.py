"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from waifutag.api.routes import router
from waifutag.config import get_settings
from waifutag.ml.errors import TaggerError
from waifutag.ml.inference import InferencePool
from waifutag.ml.model_manager import HubModelManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting waifutag (device=%s:%s, model=%s, max_concurrent=%s)",
        settings.device,
        settings.device_id,
        settings.model,
        settings.max_concurrent,
    )

    inference_pool = InferencePool(settings)
    model_manager = HubModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager

    if settings.preload:
        try:
            await asyncio.to_thread(model_manager.get_pipeline, settings.model)
        except (TaggerError, KeyError) as exc:
            # The service still starts; /tag reports the failure per request.
            logger.error("Could not preload %s: %s", settings.model, exc)

    logger.info("waifutag ready")
    yield

    logger.info("Shutting down waifutag")
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("waifutag shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="waifutag",
        description="WaifuDiffusion tagger inference API",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
