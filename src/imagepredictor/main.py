"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from imagepredictor.api.routes import router
from imagepredictor.config import Settings, get_settings
from imagepredictor.ml.inference import ClassificationEngine
from imagepredictor.ml.model_manager import OnnxModelManager, SharedClassifier, check_model_source
from imagepredictor.ml.predictor import Predictor
from imagepredictor.ml.preprocessing import ImageCropAndScaleOption

logger = logging.getLogger(__name__)


def init_services(app: FastAPI, settings: Settings) -> None:
    """Build the model manager, shared classifier, engine and predictor on ``app.state``.

    The classifier itself is not loaded here; the first prediction loads it.
    """
    model_manager = OnnxModelManager(settings)
    classifier = SharedClassifier.from_manager(model_manager, settings.classifier_model)
    engine = ClassificationEngine(max_workers=settings.max_concurrent)

    app.state.settings = settings
    app.state.model_manager = model_manager
    app.state.classifier = classifier
    app.state.engine = engine
    app.state.predictor = Predictor(
        classifier,
        engine,
        crop_and_scale=ImageCropAndScaleOption(settings.crop_and_scale),
    )


def shutdown_services(app: FastAPI) -> None:
    app.state.engine.shutdown()
    app.state.model_manager.shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting ImagePredictor (device=%s, max_concurrent=%s, classifier=%s, crop_and_scale=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
        settings.crop_and_scale,
    )

    check_model_source(settings)
    init_services(app, settings)

    logger.info("ImagePredictor ready")
    yield

    logger.info("Shutting down ImagePredictor")
    shutdown_services(app)
    logger.info("ImagePredictor shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ImagePredictor",
        description="Image classification API returning ranked labels",
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
