import base64
import json

import httpx
import pytest
from google.auth.exceptions import RefreshError

from core.exceptions import ErrorKind, GenerationError
from connections.vertex_tryon_gateway import (
    VertexTryOnGateway,
    build_predict_parameters,
    build_predict_payload,
)
from domain.models import GenerationParameters, GenerationRequest, ImageData, ImageFormat
from services.error_classifier import ErrorClassifier


def make_gateway(handler) -> VertexTryOnGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return VertexTryOnGateway(
        project_id="demo-project",
        location="us-central1",
        model="virtual-try-on-preview-08-04",
        access_token="token-123",
        client=client,
    )


@pytest.fixture
def request_(jpeg_bytes):
    image = ImageData(data=jpeg_bytes, format=ImageFormat.JPEG)
    return GenerationRequest(person_image=image, garment_image=image)


def test_default_parameters_mapping():
    parameters = build_predict_parameters(GenerationParameters())

    assert parameters == {
        "addWatermark": True,
        "baseSteps": 32,
        "personGeneration": "allow_adult",
        "safetySetting": "block_medium_and_above",
        "sampleCount": 1,
        "outputOptions": {"mimeType": "image/png"},
    }


def test_jpeg_and_seed_are_sent_when_allowed():
    params = GenerationParameters(
        add_watermark=False, seed=42, output_format="image/jpeg", compression_quality=60
    )

    parameters = build_predict_parameters(params)

    assert parameters["seed"] == 42
    assert parameters["outputOptions"] == {"mimeType": "image/jpeg", "compressionQuality": 60}


def test_payload_carries_base64_images(request_, jpeg_bytes):
    payload = build_predict_payload(request_)

    instance = payload["instances"][0]
    assert base64.b64decode(instance["personImage"]["image"]["bytesBase64Encoded"]) == jpeg_bytes
    assert len(instance["productImages"]) == 1


@pytest.mark.asyncio
async def test_predictions_are_decoded(request_, png_bytes):
    seen = {}

    def handler(req: httpx.Request) -> httpx.Response:
        seen["url"] = str(req.url)
        seen["auth"] = req.headers["Authorization"]
        seen["body"] = json.loads(req.content)
        encoded = base64.b64encode(png_bytes).decode()
        return httpx.Response(
            200,
            json={"predictions": [{"bytesBase64Encoded": encoded, "mimeType": "image/png"}]},
        )

    gateway = make_gateway(handler)
    result = await gateway.generate(request_)
    await gateway.close()

    assert result.request_id == request_.id
    assert result.images[0].data == png_bytes
    assert result.images[0].format == ImageFormat.PNG
    assert seen["url"].endswith(
        "/projects/demo-project/locations/us-central1/publishers/google/models/"
        "virtual-try-on-preview-08-04:predict"
    )
    assert seen["url"].startswith("https://us-central1-aiplatform.googleapis.com/v1/")
    assert seen["auth"] == "Bearer token-123"
    assert seen["body"]["parameters"]["sampleCount"] == 1


@pytest.mark.asyncio
async def test_undecodable_predictions_are_skipped(request_, png_bytes):
    def handler(req):
        return httpx.Response(
            200,
            json={
                "predictions": [
                    {"bytesBase64Encoded": base64.b64encode(b"garbage").decode()},
                    {"raiFilteredReason": "blocked"},
                    {"bytesBase64Encoded": base64.b64encode(png_bytes).decode()},
                ]
            },
        )

    result = await make_gateway(handler).generate(request_)

    assert len(result.images) == 1


@pytest.mark.asyncio
async def test_http_429_is_tagged_as_quota(request_):
    gateway = make_gateway(lambda req: httpx.Response(429, text="Too Many Requests"))

    with pytest.raises(GenerationError) as exc_info:
        await gateway.generate(request_)

    assert exc_info.value.kind == ErrorKind.QUOTA_EXCEEDED
    assert "429" in str(exc_info.value)


@pytest.mark.asyncio
async def test_resource_exhausted_status_is_tagged_as_quota(request_):
    body = {"error": {"code": 400, "status": "RESOURCE_EXHAUSTED", "message": "limit reached"}}
    gateway = make_gateway(lambda req: httpx.Response(400, json=body))

    with pytest.raises(GenerationError) as exc_info:
        await gateway.generate(request_)

    assert exc_info.value.is_quota_exceeded


@pytest.mark.asyncio
async def test_server_error_is_left_to_the_classifier(request_):
    gateway = make_gateway(lambda req: httpx.Response(500, text="internal"))

    with pytest.raises(GenerationError) as exc_info:
        await gateway.generate(request_)

    assert exc_info.value.kind is None
    assert ErrorClassifier().classify(exc_info.value) == ErrorKind.GENERIC


@pytest.mark.asyncio
async def test_quota_message_without_quota_status_is_still_classified(request_):
    body = {
        "error": {
            "code": 403,
            "status": "PERMISSION_DENIED",
            "message": "Quota exceeded for quota metric 'Online prediction requests'",
        }
    }
    gateway = make_gateway(lambda req: httpx.Response(403, json=body))

    with pytest.raises(GenerationError) as exc_info:
        await gateway.generate(request_)

    assert exc_info.value.kind is None
    assert ErrorClassifier().classify(exc_info.value) == ErrorKind.QUOTA_EXCEEDED


@pytest.mark.asyncio
async def test_no_predictions_is_an_error(request_):
    gateway = make_gateway(lambda req: httpx.Response(200, json={"predictions": []}))

    with pytest.raises(GenerationError) as exc_info:
        await gateway.generate(request_)

    assert "no predictions" in str(exc_info.value)


@pytest.mark.asyncio
async def test_transport_failure_is_wrapped(request_):
    def handler(req):
        raise httpx.ConnectError("connection refused", request=req)

    with pytest.raises(GenerationError) as exc_info:
        await make_gateway(handler).generate(request_)

    assert "failed to send request" in str(exc_info.value)
    assert isinstance(exc_info.value.original_error, httpx.ConnectError)


class FakeCredentials:
    """Duck-typed google.auth credentials; the token is valid until cleared."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.token = None
        self.refreshes = 0

    @property
    def valid(self) -> bool:
        return self.token is not None

    def refresh(self, request):
        if self.fail:
            raise RefreshError("metadata server unavailable")
        self.refreshes += 1
        self.token = f"adc-token-{self.refreshes}"


def make_adc_gateway(handler, credentials) -> VertexTryOnGateway:
    return VertexTryOnGateway(
        project_id="demo-project",
        location="us-central1",
        model="virtual-try-on-preview-08-04",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        credentials=credentials,
    )


def ok_handler(png_bytes, seen):
    def handler(req):
        seen.append(req.headers["Authorization"])
        return httpx.Response(
            200, json={"predictions": [{"bytesBase64Encoded": base64.b64encode(png_bytes).decode()}]}
        )

    return handler


@pytest.mark.asyncio
async def test_credentials_are_refreshed_only_when_invalid(request_, png_bytes):
    seen = []
    credentials = FakeCredentials()
    gateway = make_adc_gateway(ok_handler(png_bytes, seen), credentials)

    await gateway.generate(request_)
    await gateway.generate(request_)

    assert credentials.refreshes == 1
    assert seen == ["Bearer adc-token-1", "Bearer adc-token-1"]


@pytest.mark.asyncio
async def test_expired_token_is_refreshed(request_, png_bytes):
    seen = []
    credentials = FakeCredentials()
    gateway = make_adc_gateway(ok_handler(png_bytes, seen), credentials)

    await gateway.generate(request_)
    credentials.token = None  # expired
    await gateway.generate(request_)

    assert seen == ["Bearer adc-token-1", "Bearer adc-token-2"]


@pytest.mark.asyncio
async def test_static_token_overrides_credentials(request_, png_bytes):
    seen = []
    credentials = FakeCredentials()
    gateway = make_adc_gateway(ok_handler(png_bytes, seen), credentials)
    gateway.access_token = "static-token"

    await gateway.generate(request_)

    assert seen == ["Bearer static-token"]
    assert credentials.refreshes == 0


@pytest.mark.asyncio
async def test_credential_refresh_failure_is_a_generation_error(request_, png_bytes):
    seen = []
    gateway = make_adc_gateway(ok_handler(png_bytes, seen), FakeCredentials(fail=True))

    with pytest.raises(GenerationError) as exc_info:
        await gateway.generate(request_)

    assert "failed to obtain access token" in str(exc_info.value)
    assert seen == []
