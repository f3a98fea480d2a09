"""
Image handling for exam pages sent to the vision capability.
"""
import base64
import io
import logging
from dataclasses import dataclass

from PIL import Image, ImageEnhance, ImageOps, UnidentifiedImageError

from ..exceptions import ImageDecodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExamImage:
    """An image ready to be sent to the capability."""
    data: bytes
    content_type: str = "image/png"
    filename: str = "page.png"

    def to_base64(self) -> str:
        return base64.standard_b64encode(self.data).decode("utf-8")

    def to_data_url(self) -> str:
        return f"data:{self.content_type};base64,{self.to_base64()}"


def enhance_for_transcription(image: Image.Image) -> Image.Image:
    """
    Enhance a scanned page for handwriting and ink-mark recognition.

    Applies autocontrast, a contrast boost and slight sharpening. Colour is
    kept: teacher marks are identified by red/green ink.
    """
    try:
        image = ImageOps.autocontrast(image, cutoff=1)
        image = ImageEnhance.Contrast(image).enhance(1.3)
        image = ImageEnhance.Sharpness(image).enhance(1.3)
        return image
    except Exception as e:
        logger.warning(f"Image enhancement failed, using original: {e}")
        return image


def prepare_image(
    data: bytes,
    filename: str = "page",
    max_size: int = 2000,
    enhance: bool = True,
) -> ExamImage:
    """
    Decode an uploaded page, normalize it and re-encode it as PNG.

    Args:
        data: Raw uploaded bytes (JPEG, PNG, ...)
        filename: Original filename, for logging and the result
        max_size: Maximum dimension (width or height)
        enhance: Whether to apply contrast/sharpening enhancement

    Raises:
        ImageDecodeError: If the bytes are empty or not a readable image
    """
    if not data:
        raise ImageDecodeError(f"{filename}: empty image")

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ImageDecodeError(f"{filename}: unreadable image ({e})") from e

    # Handles grayscale, palette and RGBA scans
    if image.mode != "RGB":
        image = image.convert("RGB")

    if enhance:
        image = enhance_for_transcription(image)

    if max(image.size) > max_size:
        ratio = max_size / max(image.size)
        new_size = (int(image.size[0] * ratio), int(image.size[1] * ratio))
        image = image.resize(new_size, Image.Resampling.LANCZOS)
        logger.debug(f"Resized {filename} to {new_size}")

    buffer = io.BytesIO()
    image.save(buffer, format="PNG", optimize=True)
    return ExamImage(data=buffer.getvalue(), content_type="image/png", filename=filename)
