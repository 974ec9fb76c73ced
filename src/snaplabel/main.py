"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse

from snaplabel.api.routes import router
from snaplabel.capture.source import CaptureSource, webcam_opener
from snaplabel.config import get_settings
from snaplabel.core.controller import AppController
from snaplabel.ml.inference import InferencePool
from snaplabel.ml.model_gateway import ModelGateway

logger = logging.getLogger(__name__)

_INDEX_HTML = Path(__file__).parent / "static" / "index.html"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, release the camera on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SnapLabel (device=%s, model=%s, cameras=%d/%d)",
        settings.device,
        settings.model_dir or settings.model_repo,
        settings.preferred_camera,
        settings.default_camera,
    )

    inference_pool = InferencePool(settings)
    gateway = ModelGateway(settings, inference_pool)
    controller = AppController(settings, gateway, CaptureSource(webcam_opener(settings)), inference_pool)
    app.state.inference_pool = inference_pool
    app.state.gateway = gateway
    app.state.controller = controller

    await controller.load_model()
    logger.info("SnapLabel ready")
    yield

    logger.info("Shutting down SnapLabel")
    await controller.shutdown()
    inference_pool.shutdown()
    logger.info("SnapLabel shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapLabel",
        description="Camera and upload front-end for an image classifier",
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

    @application.get("/", response_class=HTMLResponse, include_in_schema=False)
    async def index() -> HTMLResponse:
        return HTMLResponse(_INDEX_HTML.read_text(encoding="utf-8"))

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("snaplabel.main:app", host=settings.host, port=settings.port)
