"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from labelkit.api.middleware import require_api_key
from labelkit.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from labelkit.errors import EmptyInputError, ImageTooLargeError, ShapeMismatchError
from labelkit.ml.emoji import format_display
from labelkit.ml.model_manager import MODEL_REGISTRY
from labelkit.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from labelkit.config import Settings
    from labelkit.ml.image_classifier import ImageClassifier
    from labelkit.ml.inference import FrameThrottle, InferencePool
    from labelkit.ml.model_manager import ModelManager
    from labelkit.ml.ranking import RankedLabel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])

_CLASSIFY_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_classifier(request: Request) -> ImageClassifier:
    classifier: ImageClassifier = request.app.state.classifier
    return classifier


def _get_frame_throttle(request: Request) -> FrameThrottle:
    throttle: FrameThrottle = request.app.state.frame_throttle
    return throttle


def _decode_and_classify(classifier: ImageClassifier, payload: bytes, max_pixels: int) -> list[RankedLabel]:
    image = decode_image(payload, max_pixels=max_pixels)
    return classifier.classify(image)


async def _classify_upload(request: Request, file: UploadFile) -> ClassifyImageResponse:
    settings = _get_settings(request)
    classifier = _get_classifier(request)
    pool = _get_inference_pool(request)

    payload = await file.read()
    if not payload:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
    if len(payload) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail="Uploaded file exceeds size limit",
        )

    try:
        ranked = await pool.run(_decode_and_classify, classifier, payload, settings.max_image_pixels)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference capacity exhausted, retry later",
        ) from None
    except ImageTooLargeError as exc:
        raise HTTPException(status_code=status.HTTP_413_CONTENT_TOO_LARGE, detail=str(exc)) from exc
    except (ShapeMismatchError, EmptyInputError) as exc:
        logger.error("Classification of %s failed: %s", file.filename, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Model output does not match the label table",
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return ClassifyImageResponse(
        model=classifier.model_name,
        ready=classifier.is_ready,
        tags=[ImageTag(label=r.label, confidence=r.confidence, display=format_display(r)) for r in ranked],
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses=_CLASSIFY_RESPONSES,
    summary="Classify an image with ranked labels",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return ranked labels."""
    return await _classify_upload(request, file)


@router.post(
    "/classify-frame",
    response_model=ClassifyImageResponse,
    responses={**_CLASSIFY_RESPONSES, status.HTTP_429_TOO_MANY_REQUESTS: {"model": ErrorResponse}},
    summary="Classify a streamed frame, dropping it if another frame is in flight",
)
async def classify_frame(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify one frame of a stream; frames are dropped, not queued, while one is in flight."""
    throttle = _get_frame_throttle(request)
    with throttle.slot() as acquired:
        if not acquired:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Frame dropped: another frame is still being classified",
            )
        return await _classify_upload(request, file)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    classifier = _get_classifier(request)
    throttle = _get_frame_throttle(request)
    manager: ModelManager = request.app.state.model_manager
    return HealthResponse(
        status="ok" if classifier.is_ready else "degraded",
        ready=classifier.is_ready,
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        frame_in_flight=throttle.in_flight,
        frames_dropped=throttle.dropped_count,
        setup_error=classifier.setup_error,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List registered model variants",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered model variants, marking the configured one active."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            encoding=spec.io.encoding.value,
            input_size=[spec.io.width, spec.io.height],
            output_mode=spec.output_mode.value,
            status="active" if spec.name == settings.model else "available",
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
