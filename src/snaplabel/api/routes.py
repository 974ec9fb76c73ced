"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response

from snaplabel.api.middleware import verify_api_key
from snaplabel.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelResponse,
    NoticeErrorResponse,
    StateResponse,
)

if TYPE_CHECKING:
    from snaplabel.config import Settings
    from snaplabel.core.controller import AppController
    from snaplabel.ml.inference import InferencePool
    from snaplabel.ml.model_gateway import ModelGateway

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_controller(request: Request) -> AppController:
    controller: AppController = request.app.state.controller
    return controller


def _state_response(controller: AppController) -> StateResponse:
    session = controller.capture.session
    return StateResponse(
        ui=controller.state,
        capture_state=controller.capture.state.value,
        capture_mode=session.mode.value if session is not None else None,
    )


def _jpeg(data: bytes | None, missing: str) -> Response:
    if data is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=missing)
    return Response(content=data, media_type="image/jpeg", headers={"Cache-Control": "no-store"})


@router.get("/state", response_model=StateResponse, summary="Current front-end state")
async def get_state(request: Request) -> StateResponse:
    """Return panel visibility, prediction text, and capture status."""
    return _state_response(_get_controller(request))


@router.post(
    "/capture/start",
    response_model=StateResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": NoticeErrorResponse}},
    summary="Start the camera",
)
async def start_capture(request: Request) -> StateResponse | JSONResponse:
    """Start the camera (preferred device first, then the default one)."""
    controller = _get_controller(request)
    notice = await controller.start_capture()
    if notice is not None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=NoticeErrorResponse(detail=notice.message, notice=notice).model_dump(),
        )
    return _state_response(controller)


@router.post("/capture/stop", response_model=StateResponse, summary="Stop the camera")
async def stop_capture(request: Request) -> StateResponse:
    """Stop the camera. Calling this when the camera is off is harmless."""
    controller = _get_controller(request)
    controller.stop_capture()
    return _state_response(controller)


@router.get(
    "/capture/frame",
    response_class=Response,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Latest camera frame",
)
async def capture_frame(request: Request) -> Response:
    """Return the most recent camera frame as a JPEG."""
    return _jpeg(_get_controller(request).frame_jpeg(), "Camera is not running")


@router.post(
    "/upload",
    response_model=StateResponse,
    responses={status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse}},
    summary="Classify an uploaded image",
)
async def upload_image(
    request: Request,
    file: Annotated[UploadFile | None, File()] = None,
) -> StateResponse:
    """Stop the camera, then classify the uploaded image once."""
    controller = _get_controller(request)
    data: bytes | None = None
    if file is not None:
        max_size = _get_settings(request).max_file_size
        try:
            data = await file.read(max_size + 1)
        finally:
            await file.close()
        if len(data) > max_size:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File exceeds {max_size} bytes",
            )

    await controller.handle_upload(data)
    return _state_response(controller)


@router.get(
    "/upload/image",
    response_class=Response,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Last uploaded image",
)
async def uploaded_image(request: Request) -> Response:
    """Return the last uploaded image as a JPEG."""
    return _jpeg(_get_controller(request).upload_jpeg, "No image uploaded")


@router.get("/model", response_model=ModelResponse, summary="Classifier information")
async def model_info(request: Request) -> ModelResponse:
    """Return the loaded model's name and labels."""
    gateway: ModelGateway = request.app.state.gateway
    return ModelResponse(loaded=gateway.is_loaded, name=gateway.model_name, labels=gateway.labels)


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    controller = _get_controller(request)
    pool: InferencePool = request.app.state.inference_pool
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_loaded=controller.state.model_ready,
        capture_state=controller.capture.state.value,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
