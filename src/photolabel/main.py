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

from photolabel.api.routes import router
from photolabel.config import get_settings
from photolabel.ml.inference import InferencePool
from photolabel.orchestrator import ClassificationOrchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start loading the model, tear it down on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting PhotoLabel (device=%s, mobilenet=v%s@%s, top_k=%s, threshold=%s)",
        settings.device,
        settings.mobilenet_version,
        settings.width_multiplier,
        settings.top_k,
        settings.confidence_threshold,
    )

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    orchestrator = ClassificationOrchestrator.from_settings(settings, inference_pool)
    app.state.orchestrator = orchestrator

    # Load in the background so the API (and /state) answers while the model downloads.
    loading = asyncio.create_task(orchestrator.initialize())

    logger.info("PhotoLabel accepting requests")
    yield

    logger.info("Shutting down PhotoLabel")
    if not loading.done():
        loading.cancel()
    orchestrator.teardown()
    inference_pool.shutdown()
    logger.info("PhotoLabel shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="PhotoLabel",
        description="Classify captured photos with a pretrained MobileNet model",
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
