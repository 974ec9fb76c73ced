"""Pydantic response schemas for the SnapLabel API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from snaplabel.core.state import Notice, UIState


class StateResponse(BaseModel):
    """Current front-end state plus the capture state machine position."""

    ui: UIState
    capture_state: str = Field(description="Capture state: 'idle', 'negotiating', or 'running'")
    capture_mode: str | None = Field(default=None, description="'preferred' or 'fallback' while running")


class ModelResponse(BaseModel):
    """Information about the loaded classifier."""

    loaded: bool
    name: str | None
    labels: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    gpu: bool
    model_loaded: bool
    capture_state: str
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str


class NoticeErrorResponse(BaseModel):
    """Error response carrying a structured, user-facing notice."""

    detail: str
    notice: Notice
