import io
from typing import List, Optional, Sequence

import pytest
from PIL import Image

from macocr.models import Point, RawObservation
from macocr.ocr_backends.base import BaseOCREngine


def make_image_bytes(width: int = 200, height: int = 100, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=(255, 255, 255)).save(buf, format=fmt)
    return buf.getvalue()


def rect_observation(text: str, x: float, y: float, w: float, h: float, confidence: Optional[float] = 0.9) -> RawObservation:
    """Observation for a normalized rectangle whose (x, y) is its bottom-left corner."""
    return RawObservation(
        text=text,
        corners=[Point(x, y + h), Point(x + w, y + h), Point(x + w, y), Point(x, y)],
        confidence=confidence,
    )


class StubEngine(BaseOCREngine):
    """Returns the same observations for every image and records each call."""

    def __init__(self, observations: Sequence[RawObservation] = ()):
        self.observations = list(observations)
        self.calls: List[tuple] = []

    def recognize(self, data: bytes, width: int, height: int) -> List[RawObservation]:
        self.calls.append((len(data), width, height))
        return list(self.observations)


class FailingEngine(BaseOCREngine):
    def __init__(self, exc: Exception):
        self.exc = exc

    def recognize(self, data, width, height):
        raise self.exc


class MustNotRunEngine(BaseOCREngine):
    """Fails the test if recognition is ever reached."""

    def recognize(self, data, width, height):
        pytest.fail("recognition must not be invoked")


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes(200, 100)


@pytest.fixture
def two_lines() -> List[RawObservation]:
    return [
        rect_observation("Hello", 0.1, 0.7, 0.5, 0.2),
        rect_observation("World", 0.1, 0.2, 0.3, 0.1),
    ]


@pytest.fixture
def stub_engine(two_lines) -> StubEngine:
    return StubEngine(two_lines)
