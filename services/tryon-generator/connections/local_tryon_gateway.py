import asyncio
import io

import structlog
from PIL import Image, ImageOps

from domain.interfaces import GenerationGateway
from domain.models import (
    GenerationRequest,
    GenerationResult,
    ImageData,
    ImageFormat,
    OutputFormat,
)

logger = structlog.get_logger()


class LocalTryOnGateway(GenerationGateway):
    """
    Offline stand-in for the try-on model: pastes a thumbnail of the garment
    over the person image. Lets the whole pipeline run without credentials.
    """

    def __init__(self, render_size: int = 512):
        self.render_size = render_size

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        logger.info("local_tryon_render", request_id=request.id, samples=request.parameters.sample_count)
        images = await asyncio.to_thread(self._render, request)
        return GenerationResult(request_id=request.id, images=tuple(images))

    def _render(self, request: GenerationRequest) -> list[ImageData]:
        params = request.parameters

        with Image.open(io.BytesIO(request.person_image.data)) as person_img:
            person = ImageOps.fit(person_img.convert("RGB"), (self.render_size, self.render_size))
        with Image.open(io.BytesIO(request.garment_image.data)) as garment_img:
            garment = garment_img.convert("RGB")
            garment.thumbnail((self.render_size // 2, self.render_size // 2))

        images = []
        for sample in range(params.sample_count):
            canvas = person.copy()
            # Shift each sample a little so they are distinguishable
            offset = (sample * 8) % max(1, self.render_size - garment.width)
            canvas.paste(garment, ((self.render_size - garment.width) // 2 + offset // 2, self.render_size // 4))

            buffer = io.BytesIO()
            if params.output_format == OutputFormat.JPEG:
                quality = params.compression_quality or 75
                canvas.save(buffer, "JPEG", quality=quality)
                images.append(ImageData(data=buffer.getvalue(), format=ImageFormat.JPEG))
            else:
                canvas.save(buffer, "PNG")
                images.append(ImageData(data=buffer.getvalue(), format=ImageFormat.PNG))

        return images
