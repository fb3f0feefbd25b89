"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from labelkit.config import Settings
    from labelkit.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from labelkit.api.routes import router
from labelkit.config import get_settings
from labelkit.errors import ConfigurationError
from labelkit.ml.image_classifier import ImageClassifier
from labelkit.ml.inference import FrameThrottle, InferencePool, OnnxInference
from labelkit.ml.model_manager import OnnxModelManager, get_spec
from labelkit.ml.ranking import OutputMode

logger = logging.getLogger(__name__)


def build_classifier(settings: Settings, manager: ModelManager) -> ImageClassifier:
    """Create the classifier for the configured model variant.

    Model or label files that cannot be located or loaded leave the
    classifier disabled instead of failing startup.

    Raises:
        KeyError: If the configured model is not registered.
    """
    spec = get_spec(settings.model)
    mode = OutputMode(settings.output_mode) if settings.output_mode is not None else spec.output_mode

    infer: OnnxInference | None = None
    num_classes: int | None = None
    try:
        infer = OnnxInference(manager, spec.name)
        num_classes = infer.num_classes
    except (ConfigurationError, OSError) as exc:
        logger.error("Failed to load model %s: %s", spec.name, exc)

    labels_path = None
    try:
        labels_path = manager.ensure_labels(spec.name)
    except (ConfigurationError, OSError) as exc:
        logger.error("Failed to locate labels for %s: %s", spec.name, exc)

    return ImageClassifier(
        spec.io,
        labels_path,
        infer,
        top_k=settings.top_k,
        mode=mode,
        num_classes=num_classes,
        model_name=spec.name,
    )


async def _evict_idle_models(manager: ModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        manager.unload_idle_models()


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
        "Starting LabelKit (device=%s, max_concurrent=%s, model=%s, top_k=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model,
        settings.top_k,
    )

    model_manager = OnnxModelManager(settings)
    app.state.model_manager = model_manager
    app.state.classifier = build_classifier(settings, model_manager)
    app.state.inference_pool = InferencePool(settings)
    app.state.frame_throttle = FrameThrottle()

    eviction_task = None
    if settings.model_ttl > 0:
        eviction_task = asyncio.create_task(_evict_idle_models(model_manager, settings.model_ttl))

    logger.info("LabelKit ready (classifier ready=%s)", app.state.classifier.is_ready)
    yield

    logger.info("Shutting down LabelKit")
    if eviction_task is not None:
        eviction_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await eviction_task
    app.state.inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("LabelKit shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="LabelKit",
        description="Image classification API: tensor encoding, ONNX inference, and top-K label ranking",
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
