"""Pydantic request/response schemas for the LabelKit API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImageTag(BaseModel):
    """A single ranked label with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)
    display: str = Field(description="Display string, e.g. 'banana:0.850' or an emoji form for fruits")


class ClassifyImageResponse(BaseModel):
    """Response for the image and frame classification endpoints."""

    model: str
    ready: bool = Field(description="False when the classifier failed setup and tags hold the sentinel")
    tags: list[ImageTag] = Field(description="Ranked by descending confidence")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    ready: bool
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    frame_in_flight: bool
    frames_dropped: int
    setup_error: str | None = None


class ModelInfo(BaseModel):
    """Information about a registered model variant."""

    name: str
    encoding: str = Field(description="Input encoding: 'quantized_byte' or 'normalized_float32'")
    input_size: list[int] = Field(description="[width, height] in pixels")
    output_mode: str = Field(description="Default ranking mode: 'top_k' or 'top_1'")
    status: str = Field(description="Model status: 'active' or 'available'")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
