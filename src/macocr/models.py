# macocr/models.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass
class ImageInput:
    """Raw image bytes plus decoded pixel dimensions, alive for one recognition call."""
    data: bytes
    width: int
    height: int
    format: Optional[str] = None


@dataclass
class RawObservation:
    """
    One detected text line as the engine reports it.
    Corners are normalized to [0, 1] with a bottom-left origin (y grows upward),
    ordered top-left, top-right, bottom-right, bottom-left.
    """
    text: str
    corners: List[Point]
    confidence: Optional[float] = None


@dataclass(frozen=True)
class TextRegion:
    """A recognized line in pixel space, top-left origin, y grows downward."""
    text: str
    x: float
    y: float
    w: float
    h: float
    corners: Tuple[Point, Point, Point, Point]
    confidence: Optional[float] = None

    @property
    def top_left(self) -> Point:
        return self.corners[0]

    @property
    def top_right(self) -> Point:
        return self.corners[1]

    @property
    def bottom_right(self) -> Point:
        return self.corners[2]

    @property
    def bottom_left(self) -> Point:
        return self.corners[3]

    def to_dict(self, legacy: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {"text": self.text, "x": self.x, "y": self.y, "w": self.w, "h": self.h}
        if not legacy:
            d["rect"] = {
                "top_left_x": self.top_left.x,
                "top_left_y": self.top_left.y,
                "top_right_x": self.top_right.x,
                "top_right_y": self.top_right.y,
                "bottom_right_x": self.bottom_right.x,
                "bottom_right_y": self.bottom_right.y,
                "bottom_left_x": self.bottom_left.x,
                "bottom_left_y": self.bottom_left.y,
            }
        return d


@dataclass
class RecognitionResult:
    """Represents the final output for a single image."""
    success: bool
    message: str
    text: str = ""
    image_width: int = 0
    image_height: int = 0
    regions: List[TextRegion] = field(default_factory=list)

    def to_dict(self, legacy: bool = False) -> Dict[str, Any]:
        """JSON envelope shared by the upload endpoint and any other JSON output."""
        return {
            "success": self.success,
            "message": self.message,
            "ocr_result": self.text,
            "image_width": self.image_width,
            "image_height": self.image_height,
            "ocr_boxes": [r.to_dict(legacy=legacy) for r in self.regions],
        }


@dataclass
class FileOutcome:
    """What happened to one input file in a batch run."""
    source_path: str
    ok: bool
    text: str = ""
    output_path: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0
