"""Pydantic request/response schemas for the waifutag API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class TagResponse(BaseModel):
    """Tags for one image, grouped by category (tag name -> confidence)."""

    model: str = Field(description="Model variant that produced the tags")
    rating: dict[str, float]
    character: dict[str, float]
    general: dict[str, float]
    caption: str = Field(description="Comma-joined character and general tags, highest score first")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    device: str
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about a tagger variant."""

    name: str
    repo_id: str
    input_size: int
    status: str = Field(description="Model status: 'loaded' or 'available'")
    default: bool = False


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
