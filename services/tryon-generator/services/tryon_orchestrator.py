import asyncio
from typing import Optional, Sequence

import structlog

from core.exceptions import (
    EmptyResultError,
    ErrorKind,
    GenerationError,
    NormalizationError,
    StorageError,
    TryOnError,
    ValidationException,
)
from core.telemetry import tracer
from domain.interfaces import GenerationGateway, RequestStore
from domain.models import (
    AggregatedOutput,
    GarmentInput,
    GenerationParameters,
    GenerationRequest,
    GenerationResult,
    ImageData,
    OutputImage,
)
from processors.image_normalizer import ImageNormalizer
from processors.parameter_normalizer import ParameterNormalizer, RawParameters
from services.error_classifier import ErrorClassifier

logger = structlog.get_logger()


class TryOnOrchestrator:
    """
    Turns one person image + N garment images into N provider calls and
    merges their images into a single response.

    - Validation is sequential and fail-fast; nothing is sent before every
      image has been identified.
    - Units run concurrently, at most ``max_concurrency`` at a time.
    - All-or-nothing: the first failing unit cancels its siblings and its
      error is raised. Partial results are discarded.
    - Output images follow garment input order.

    Holds no per-call state, so one instance can serve concurrent calls.
    """

    def __init__(
        self,
        gateway: GenerationGateway,
        store: RequestStore,
        image_normalizer: Optional[ImageNormalizer] = None,
        parameter_normalizer: Optional[ParameterNormalizer] = None,
        error_classifier: Optional[ErrorClassifier] = None,
        max_concurrency: int = 4,
        timeout: Optional[float] = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.gateway = gateway
        self.store = store
        self.image_normalizer = image_normalizer or ImageNormalizer()
        self.parameter_normalizer = parameter_normalizer or ParameterNormalizer()
        self.error_classifier = error_classifier or ErrorClassifier()
        self.max_concurrency = max_concurrency
        self.timeout = timeout

    async def execute(
        self,
        person_image: bytes,
        person_mime_hint: Optional[str],
        garment_images: Sequence[GarmentInput],
        raw_parameters: RawParameters = None,
    ) -> AggregatedOutput:
        with tracer.start_as_current_span("tryon.execute") as span:
            # 1. Parameters
            parameters = self.parameter_normalizer.normalize(raw_parameters)

            # 2. Images (detection only, conversion happens per unit)
            person = self._identify(person_image, person_mime_hint, "person image")

            if not garment_images:
                raise ValidationException("at least one garment image is required")

            garments = [
                self._identify(g.data, g.mime_type, f"garment image #{index + 1}")
                for index, g in enumerate(garment_images)
            ]

            span.set_attribute("tryon.garment_count", len(garments))
            log = logger.bind(garment_count=len(garments))
            log.info(
                "tryon_started",
                person_format=person.format.value,
                garment_formats=[g.format.value for g in garments],
                output_format=parameters.output_mime_type,
            )

            # 3. Fan-out / fan-in
            results = await self._fan_out(person, garments, parameters)

            # 4. Persist results only once every unit succeeded
            for result in results:
                try:
                    await self.store.save_result(result)
                except TryOnError:
                    raise
                except Exception as e:
                    raise StorageError(f"failed to save result: {e}", e)

            output = AggregatedOutput(
                request_id=results[0].request_id,
                images=[
                    OutputImage(data=image.data, mime_type=parameters.output_mime_type)
                    for result in results
                    for image in result.images
                ],
            )

            log.info("tryon_completed", request_id=output.request_id, image_count=len(output.images))
            return output

    def _identify(self, data: bytes, mime_hint: Optional[str], label: str) -> ImageData:
        if not data:
            raise ValidationException(f"{label} is required")
        try:
            return self.image_normalizer.normalize(data, mime_hint)
        except NormalizationError as e:
            raise ValidationException(f"invalid {label}: {e}", e)

    async def _fan_out(
        self,
        person: ImageData,
        garments: list[ImageData],
        parameters: GenerationParameters,
    ) -> list[GenerationResult]:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        results: list[Optional[GenerationResult]] = [None] * len(garments)

        async def run(index: int, garment: ImageData) -> None:
            async with semaphore:
                results[index] = await self._run_unit(index, person, garment, parameters)

        tasks = [
            asyncio.create_task(run(index, garment), name=f"tryon-unit-{index}")
            for index, garment in enumerate(garments)
        ]

        try:
            done, pending = await asyncio.wait(
                tasks, timeout=self.timeout, return_when=asyncio.FIRST_EXCEPTION
            )
        finally:
            # Covers sibling failure, timeout and cancellation of the caller
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        failed = [t for t in tasks if t in done and not t.cancelled() and t.exception()]
        if failed:
            error = failed[0].exception()
            logger.warning(
                "tryon_failed",
                error=str(error),
                failed_units=len(failed),
                cancelled_units=len(pending),
            )
            raise error  # type: ignore[misc]

        if pending:
            logger.warning("tryon_timed_out", timeout=self.timeout, unfinished_units=len(pending))
            raise GenerationError(
                f"try-on generation timed out after {self.timeout}s",
                kind=ErrorKind.GENERIC,
            )

        return [result for result in results if result is not None]

    async def _run_unit(
        self,
        index: int,
        person: ImageData,
        garment: ImageData,
        parameters: GenerationParameters,
    ) -> GenerationResult:
        log = logger.bind(unit=index)

        with tracer.start_as_current_span("tryon.unit") as span:
            span.set_attribute("tryon.unit", index)

            # a. Canonical encoding (CPU bound)
            person_jpeg, garment_jpeg = await asyncio.to_thread(
                self._to_canonical, person, garment
            )

            # b. Persist the request before calling out
            request = GenerationRequest(
                person_image=person_jpeg,
                garment_image=garment_jpeg,
                parameters=parameters,
            )
            log = log.bind(request_id=request.id)
            span.set_attribute("tryon.request_id", request.id)

            try:
                await self.store.save(request)
            except TryOnError:
                raise
            except Exception as e:
                raise StorageError(f"failed to save request: {e}", e)

            # c. Provider call
            log.info("tryon_unit_started", garment_bytes=garment_jpeg.size)
            try:
                result = await self.gateway.generate(request)
            except Exception as e:
                error = self.error_classifier.to_generation_error(e)
                log.warning("tryon_unit_failed", kind=error.kind.value, error=str(e))
                raise error from e

            if not result.has_images:
                log.warning("tryon_unit_empty")
                raise EmptyResultError()

            log.info("tryon_unit_completed", image_count=len(result.images))
            return result

    def _to_canonical(self, person: ImageData, garment: ImageData) -> tuple[ImageData, ImageData]:
        try:
            person_jpeg = self.image_normalizer.to_canonical_encoding(person)
        except NormalizationError as e:
            raise NormalizationError(f"failed to convert person image: {e}", e)
        try:
            garment_jpeg = self.image_normalizer.to_canonical_encoding(garment)
        except NormalizationError as e:
            raise NormalizationError(f"failed to convert garment image: {e}", e)
        return person_jpeg, garment_jpeg
