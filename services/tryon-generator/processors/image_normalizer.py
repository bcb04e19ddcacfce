import io
from typing import Optional

import puremagic
import structlog
from PIL import Image, ImageOps, UnidentifiedImageError

from core.exceptions import NormalizationError
from domain.models import CANONICAL_FORMAT, ImageData, ImageFormat

logger = structlog.get_logger()

# Enough for every supported signature (WEBP needs the first 12 bytes)
HEADER_BYTES = 2048

_MIME_TO_FORMAT = {
    "image/jpeg": ImageFormat.JPEG,
    "image/pjpeg": ImageFormat.JPEG,
    "image/png": ImageFormat.PNG,
    "image/gif": ImageFormat.GIF,
    "image/webp": ImageFormat.WEBP,
}

_EXTENSION_TO_FORMAT = {
    ".jpg": ImageFormat.JPEG,
    ".jpeg": ImageFormat.JPEG,
    ".png": ImageFormat.PNG,
    ".gif": ImageFormat.GIF,
    ".webp": ImageFormat.WEBP,
}

_PIL_TO_FORMAT = {
    "JPEG": ImageFormat.JPEG,
    "MPO": ImageFormat.JPEG,  # multi-picture JPEGs from phone cameras
    "PNG": ImageFormat.PNG,
    "GIF": ImageFormat.GIF,
    "WEBP": ImageFormat.WEBP,
}


class ImageNormalizer:
    """
    Detects the encoding of uploaded images and converts them to the
    canonical encoding (JPEG) the try-on model accepts.
    - Detection only looks at the header, it does not decode pixels.
    - Conversion fully decodes and re-encodes; JPEG input is returned as is.
    """

    def __init__(self, quality: int = 90):
        self.quality = quality

    def detect_format(self, data: bytes) -> ImageFormat:
        if not data:
            raise NormalizationError("image data cannot be empty")

        head_bytes = data[:HEADER_BYTES]

        # 1. ATTEMPT PUREMAGIC
        try:
            for match in puremagic.magic_string(head_bytes):
                detected = _MIME_TO_FORMAT.get(match.mime_type) or _EXTENSION_TO_FORMAT.get(
                    match.extension
                )
                if detected:
                    return detected
        except (puremagic.PureError, ValueError):
            logger.debug("magic_bytes_unmatched", size=len(data))

        # 2. FALLBACK: let Pillow identify the header
        try:
            with Image.open(io.BytesIO(data)) as img:
                pil_format = img.format
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise NormalizationError("unsupported image format: could not identify image", e)

        detected = _PIL_TO_FORMAT.get(pil_format or "")
        if detected is None:
            raise NormalizationError(f"unsupported image format: {pil_format}")
        return detected

    def normalize(self, data: bytes, mime_hint: Optional[str] = None) -> ImageData:
        """Builds an ImageData from raw bytes. The MIME hint is advisory only."""
        detected = self.detect_format(data)

        if mime_hint and _MIME_TO_FORMAT.get(mime_hint.lower()) not in (None, detected):
            logger.warning(
                "mime_hint_mismatch", declared=mime_hint, detected=detected.mime_type
            )

        return ImageData(data=data, format=detected)

    def to_canonical_encoding(self, image: ImageData) -> ImageData:
        if image.format == CANONICAL_FORMAT:
            return image

        try:
            with Image.open(io.BytesIO(image.data)) as img:
                # 1. Handle Orientation (EXIF Rotation)
                img = ImageOps.exif_transpose(img)

                # 2. Color Space Normalization
                # JPEG has no alpha channel: transparent areas become white,
                # not black, so garment cut-outs stay readable.
                if img.mode == "P":
                    img = img.convert("RGBA")
                if img.mode in ("RGBA", "LA"):
                    background = Image.new("RGB", img.size, (255, 255, 255))
                    background.paste(img, mask=img.getchannel("A"))
                    img = background
                elif img.mode != "RGB":
                    img = img.convert("RGB")

                # 3. Save as JPEG
                buffer = io.BytesIO()
                img.save(buffer, "JPEG", quality=self.quality)

        except Exception as e:
            logger.warning("canonical_encoding_failed", source_format=image.format.value, error=str(e))
            raise NormalizationError(
                f"failed to convert {image.format.value} image to {CANONICAL_FORMAT.value}: {e}", e
            )

        logger.debug(
            "image_converted",
            source_format=image.format.value,
            source_bytes=image.size,
            canonical_bytes=buffer.tell(),
        )
        return ImageData(data=buffer.getvalue(), format=CANONICAL_FORMAT)
