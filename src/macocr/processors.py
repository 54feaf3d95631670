# src/macocr/processors.py
from __future__ import annotations

import io
import logging
import struct
import time
from typing import List, Sequence

from PIL import Image, UnidentifiedImageError

from .exceptions import InvalidImageError, MacOCRError, RecognitionEngineError
from .geometry import normalize_observation
from .models import ImageInput, RecognitionResult, TextRegion
from .ocr_backends.base import BaseOCREngine

logger = logging.getLogger("macocr")

# Inputs are capped by byte size before they get here and only the header is
# parsed, so the pixel-count bomb check would only reject large valid scans.
Image.MAX_IMAGE_PIXELS = None

UPLOAD_SUCCESS_MESSAGE = "File uploaded successfully"


# --- 1. Decode ---
def decode_image(data: bytes) -> ImageInput:
    """
    Read pixel dimensions from encoded image bytes.
    Only the header is parsed, pixel data stays encoded for the engine.
    """
    if not data:
        raise InvalidImageError("Empty image data")
    try:
        with Image.open(io.BytesIO(data)) as im:
            width, height = im.size
            fmt = im.format
            # header looked fine, make sure the payload is not truncated garbage
            im.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, struct.error) as e:
        raise InvalidImageError(f"Cannot decode image, {e}") from e

    if width <= 0 or height <= 0:
        raise InvalidImageError(f"Image has invalid dimensions {width}x{height}")
    return ImageInput(data=data, width=int(width), height=int(height), format=fmt)


# --- 2. Recognize ---
def recognize_regions(image: ImageInput, engine: BaseOCREngine) -> List[TextRegion]:
    """
    Call the engine once and normalize its observations, keeping engine order.
    No retries; an empty list is a valid outcome.
    """
    start = time.perf_counter()
    try:
        observations = engine.recognize(image.data, image.width, image.height)
    except MacOCRError:
        raise
    except Exception as e:
        raise RecognitionEngineError(f"Recognition engine failed, {e}") from e

    regions = [normalize_observation(obs, image.width, image.height) for obs in (observations or [])]
    logger.debug(
        "Recognized %d regions in %.1f ms, %sx%s %s",
        len(regions), (time.perf_counter() - start) * 1000, image.width, image.height, image.format,
    )
    return regions


# --- 3. Assemble ---
def assemble_result(width: int, height: int, regions: Sequence[TextRegion], message: str) -> RecognitionResult:
    return RecognitionResult(
        success=True,
        message=message,
        text="\n".join(r.text for r in regions),
        image_width=width,
        image_height=height,
        regions=list(regions),
    )


def failure_result(message: str) -> RecognitionResult:
    return RecognitionResult(success=False, message=message)


def ocr_bytes(data: bytes, engine: BaseOCREngine, message: str = UPLOAD_SUCCESS_MESSAGE) -> RecognitionResult:
    """Decode, recognize and assemble one image."""
    image = decode_image(data)
    regions = recognize_regions(image, engine)
    return assemble_result(image.width, image.height, regions, message)
