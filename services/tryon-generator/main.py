import base64
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry import trace
from starlette.datastructures import UploadFile

# Internal Imports
from core.config import settings
from core.dependencies import get_orchestrator, get_store
from core.exceptions import (
    GenerationError,
    NormalizationError,
    RequestNotFoundError,
    StorageError,
    UploadTooLargeError,
    ValidationException,
)
from core.logging import configure_logging
from core.telemetry import setup_telemetry
from domain.interfaces import RequestStore
from domain.models import (
    APIResponse,
    EncodedImage,
    ErrorDetails,
    GarmentInput,
    StoredRequestData,
    TryOnResponseData,
)
from processors.parameter_normalizer import parse_form_parameters
from services.tryon_orchestrator import TryOnOrchestrator

# 1. Configure Logging
configure_logging(json_logs=(settings.ENV == "production"), log_level=settings.LOG_LEVEL)
logger = structlog.get_logger()

QUOTA_USER_MESSAGE = "The service is busy right now. Please wait a moment and try again."
GENERATION_HINT = (
    "Hint: avoid revealing outfits, celebrities, logos or heavy retouching, "
    "and retry with images where the person and the garment are clearly visible."
)


# 2. Lifespan (Startup/Shutdown)
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("startup_initiated", env=settings.ENV)
    setup_telemetry(export_spans=(settings.ENV == "production"))

    # Initialize global services
    app.state.orchestrator = get_orchestrator()
    app.state.store = get_store()

    yield

    logger.info("shutdown_initiated")
    await app.state.orchestrator.gateway.close()


# 3. Create Main App
app = FastAPI(title=settings.APP_NAME, lifespan=lifespan, version="1.0.0")


# 4. Exception Handlers
def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    ctx = trace.get_current_span().get_span_context()
    body = APIResponse[Any](
        success=False,
        error=ErrorDetails(
            code=code,
            message=message,
            trace_id=format(ctx.trace_id, "032x") if ctx.is_valid else None,
        ),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.exception_handler(UploadTooLargeError)
async def upload_too_large_handler(request: Request, exc: UploadTooLargeError):
    return _error_response(413, "upload_too_large", str(exc))


@app.exception_handler(ValidationException)
async def validation_error_handler(request: Request, exc: ValidationException):
    return _error_response(400, "invalid_request", str(exc))


@app.exception_handler(NormalizationError)
async def normalization_error_handler(request: Request, exc: NormalizationError):
    return _error_response(400, "invalid_image", str(exc))


@app.exception_handler(GenerationError)
async def generation_error_handler(request: Request, exc: GenerationError):
    logger.error("tryon_generation_failed", error=str(exc), kind=exc.kind.value if exc.kind else None)
    if exc.is_quota_exceeded:
        return _error_response(429, "quota_exceeded", QUOTA_USER_MESSAGE)
    return _error_response(502, "generation_failed", f"generation failed: {exc} {GENERATION_HINT}")


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    return _error_response(503, "storage_unavailable", str(exc))


@app.exception_handler(RequestNotFoundError)
async def not_found_handler(request: Request, exc: RequestNotFoundError):
    return _error_response(404, "not_found", str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception", error=str(exc), path=request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# 5. REST Endpoints
def _encode_images(images) -> list[EncodedImage]:
    return [
        EncodedImage(
            id=f"image_{index}",
            data=base64.b64encode(image.data).decode("ascii"),
            type=mime_type,
        )
        for index, (image, mime_type) in enumerate(images)
    ]


async def _read_uploads(person: UploadFile, garments: list[UploadFile]) -> tuple[bytes, list[bytes]]:
    budget = settings.MAX_UPLOAD_BYTES

    # Reject on the sizes the multipart parser recorded, before loading anything
    declared = [upload.size for upload in (person, *garments)]
    if all(size is not None for size in declared) and sum(declared) > budget:
        raise UploadTooLargeError(
            f"images are too large ({sum(declared)} bytes, limit is {budget} bytes)"
        )

    person_data = await person.read()
    garment_data = [await upload.read() for upload in garments]

    total = len(person_data) + sum(len(data) for data in garment_data)
    if total > budget:
        raise UploadTooLargeError(f"images are too large ({total} bytes, limit is {budget} bytes)")
    return person_data, garment_data


@app.post("/api/v1/tryon")
async def tryon_endpoint(request: Request) -> JSONResponse:
    """
    Multipart fields: person_image, garment_image (repeatable) and the
    optional generation parameters.
    """
    form = await request.form()

    person = form.get("person_image")
    if not isinstance(person, UploadFile):
        raise ValidationException("person image is required")

    garment_uploads = [f for f in form.getlist("garment_image") if isinstance(f, UploadFile)]
    if not garment_uploads:
        raise ValidationException("at least one garment image is required")

    person_data, garment_data = await _read_uploads(person, garment_uploads)
    logger.info(
        "tryon_request_received",
        person_bytes=len(person_data),
        person_type=person.content_type,
        garment_bytes=[len(data) for data in garment_data],
    )

    orchestrator: TryOnOrchestrator = request.app.state.orchestrator
    output = await orchestrator.execute(
        person_data,
        person.content_type,
        [
            GarmentInput(data=data, mime_type=upload.content_type)
            for data, upload in zip(garment_data, garment_uploads)
        ],
        parse_form_parameters(form),
    )

    body = APIResponse[TryOnResponseData](
        success=True,
        data=TryOnResponseData(
            request_id=output.request_id,
            images=_encode_images((image, image.mime_type) for image in output.images),
        ),
    )
    return JSONResponse(
        content=body.model_dump(mode="json"),
        headers={"Cache-Control": "no-store, max-age=0"},
    )


@app.get("/api/v1/tryon/{request_id}")
async def tryon_lookup_endpoint(request: Request, request_id: str) -> dict[str, Any]:
    """
    Returns a stored request and, once generated, its images.
    """
    store: RequestStore = request.app.state.store
    stored = await store.find_by_id(request_id)

    result_id: Optional[str] = None
    images: list[EncodedImage] = []
    try:
        result = await store.find_result_by_request_id(request_id)
        result_id = result.id
        images = _encode_images(
            (image, stored.parameters.output_mime_type) for image in result.images
        )
    except RequestNotFoundError:
        logger.debug("tryon_result_pending", request_id=request_id)

    body = APIResponse[StoredRequestData](
        success=True,
        data=StoredRequestData(
            request_id=stored.id,
            created_at=stored.created_at,
            parameters=stored.parameters,
            result_id=result_id,
            images=images,
        ),
    )
    return body.model_dump(mode="json")


@app.get("/health")
def health_check():
    return {"status": "ok", "env": settings.ENV}
