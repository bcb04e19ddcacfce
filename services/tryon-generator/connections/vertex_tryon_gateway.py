import asyncio
import base64
import binascii
from typing import Any, Optional

import google.auth
import google.auth.transport.requests
import httpx
import structlog
from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError

from core.config import ProductionSettings
from core.exceptions import ErrorKind, GenerationError, NormalizationError
from domain.interfaces import GenerationGateway
from domain.models import GenerationParameters, GenerationRequest, GenerationResult, ImageData
from processors.image_normalizer import ImageNormalizer

logger = structlog.get_logger()

QUOTA_STATUS_CODES = {429}
QUOTA_STATUS_NAMES = {"RESOURCE_EXHAUSTED"}

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


def build_predict_parameters(params: GenerationParameters) -> dict[str, Any]:
    """Maps GenerationParameters to the :predict ``parameters`` object."""
    output_options: dict[str, Any] = {"mimeType": params.output_mime_type}

    # Only sent when meaningful (JPEG output)
    if params.compression_quality > 0:
        output_options["compressionQuality"] = params.compression_quality

    parameters: dict[str, Any] = {
        "addWatermark": params.add_watermark,
        "baseSteps": params.base_steps,
        "personGeneration": params.person_generation.value,
        "safetySetting": params.safety_setting.value,
        "sampleCount": params.sample_count,
        "outputOptions": output_options,
    }

    # The API rejects a seed alongside a watermark
    if not params.add_watermark and params.seed > 0:
        parameters["seed"] = params.seed

    return parameters


def build_predict_payload(request: GenerationRequest) -> dict[str, Any]:
    def encoded(image: ImageData) -> dict[str, Any]:
        return {"image": {"bytesBase64Encoded": base64.b64encode(image.data).decode("ascii")}}

    return {
        "instances": [
            {
                "personImage": encoded(request.person_image),
                "productImages": [encoded(request.garment_image)],
            }
        ],
        "parameters": build_predict_parameters(request.parameters),
    }


class VertexTryOnGateway(GenerationGateway):
    """
    Calls the Vertex AI virtual try-on model through its REST :predict endpoint.
    Quota rejections the provider reports structurally (HTTP 429,
    RESOURCE_EXHAUSTED) are tagged with ErrorKind.QUOTA_EXCEEDED here;
    anything else is left untagged for the error classifier.

    Auth: a static ``access_token`` if given, otherwise Application Default
    Credentials, refreshed whenever the cached token is no longer valid.
    """

    def __init__(
        self,
        project_id: str,
        location: str,
        model: str,
        access_token: Optional[str] = None,
        timeout: float = 300.0,
        client: Optional[httpx.AsyncClient] = None,
        image_normalizer: Optional[ImageNormalizer] = None,
        credentials: Optional[Credentials] = None,
    ):
        self.project_id = project_id
        self.location = location
        self.model = model
        self.access_token = access_token
        self.credentials = credentials
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.image_normalizer = image_normalizer or ImageNormalizer()
        self._auth_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: ProductionSettings) -> "VertexTryOnGateway":
        return cls(
            project_id=settings.PROJECT_ID,
            location=settings.LOCATION,
            model=settings.VTO_MODEL,
            access_token=settings.VERTEX_ACCESS_TOKEN,
            timeout=settings.VERTEX_REQUEST_TIMEOUT,
        )

    @property
    def endpoint(self) -> str:
        return (
            f"https://{self.location}-aiplatform.googleapis.com/v1/projects/{self.project_id}"
            f"/locations/{self.location}/publishers/google/models/{self.model}:predict"
        )

    async def _bearer_token(self) -> str:
        if self.access_token:
            return self.access_token

        async with self._auth_lock:
            try:
                if self.credentials is None:
                    self.credentials, _ = await asyncio.to_thread(
                        google.auth.default, scopes=[CLOUD_PLATFORM_SCOPE]
                    )
                if not self.credentials.valid:
                    logger.info("refreshing_vertex_credentials")
                    await asyncio.to_thread(
                        self.credentials.refresh, google.auth.transport.requests.Request()
                    )
            except GoogleAuthError as e:
                raise GenerationError(f"failed to obtain access token: {e}", e)

            return self.credentials.token

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        payload = build_predict_payload(request)
        headers = {"Authorization": f"Bearer {await self._bearer_token()}"}

        # Never log the instances, they hold the images
        logger.info(
            "submitting_tryon_prediction",
            request_id=request.id,
            model=self.model,
            parameters=payload["parameters"],
        )

        try:
            resp = await self.client.post(self.endpoint, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise GenerationError(f"failed to send request: {e}", e)

        if resp.status_code != 200:
            raise GenerationError(
                f"API request failed with status {resp.status_code}: {resp.text}",
                kind=self._error_kind(resp),
            )

        try:
            predictions = resp.json().get("predictions") or []
        except ValueError as e:
            raise GenerationError(f"failed to parse response: {e}", e)

        if not predictions:
            raise GenerationError("no predictions in response")

        images = []
        for index, prediction in enumerate(predictions):
            encoded = prediction.get("bytesBase64Encoded")
            if not encoded:
                continue
            try:
                images.append(self.image_normalizer.normalize(base64.b64decode(encoded)))
            except (binascii.Error, NormalizationError) as e:
                logger.warning("prediction_skipped", request_id=request.id, index=index, error=str(e))

        if not images:
            raise GenerationError("no valid image data found in response")

        return GenerationResult(request_id=request.id, images=tuple(images))

    @staticmethod
    def _error_kind(resp: httpx.Response) -> Optional[ErrorKind]:
        # None lets the classifier fall back to the message text
        if resp.status_code in QUOTA_STATUS_CODES:
            return ErrorKind.QUOTA_EXCEEDED
        try:
            status = (resp.json().get("error") or {}).get("status")
        except (ValueError, AttributeError):
            status = None
        if status in QUOTA_STATUS_NAMES:
            return ErrorKind.QUOTA_EXCEEDED
        return None

    async def close(self) -> None:
        await self.client.aclose()
