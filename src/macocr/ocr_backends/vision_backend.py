# macocr/ocr_backends/vision_backend.py
"""macOS Vision / LiveText OCR backend."""
from __future__ import annotations

import logging
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..exceptions import RecognitionEngineError
from ..geometry import normalized_rect_to_corners
from ..models import Point, RawObservation
from .base import BaseOCREngine

# Vision and ocrmac only install on macOS
try:
    import objc
    import Vision
    from Foundation import NSData

    VISION_AVAILABLE = True
except ImportError:
    objc = None
    Vision = None
    NSData = None
    VISION_AVAILABLE = False

try:
    from ocrmac import ocrmac

    OCRMAC_AVAILABLE = True
except ImportError:
    ocrmac = None
    OCRMAC_AVAILABLE = False

logger = logging.getLogger("macocr")

_FRAMEWORKS = ("vision", "livetext")
_LEVELS = ("accurate", "fast")


class VisionOCREngine(BaseOCREngine):
    """
    Apple text recognition.

    framework="vision" runs a VNRecognizeTextRequest directly and reads each
    observation's four corners, so rotated lines keep their real quadrilateral.
    Vision reports corners normalized with a bottom-left origin, which is
    exactly the RawObservation contract.

    framework="livetext" goes through ocrmac, which only exposes an axis
    aligned [x, y, w, h] box per line; corners are built from that box.

    Kwargs supported (all optional):
      - languages / lang: list[str] | str, preferred languages (default: automatic)
      - framework: "vision" (default) or "livetext"
      - recognition_level: "accurate" (default) or "fast"
      - language_correction: bool (default True)
    """

    def __init__(self, **kwargs: Dict[str, Any]):
        k = dict(kwargs)
        framework = str(k.pop("framework", "vision")).strip().lower()
        if framework not in _FRAMEWORKS:
            raise ValueError(f"Unknown framework {framework!r}, expected one of {_FRAMEWORKS}")
        self.framework = framework

        if framework == "vision" and not VISION_AVAILABLE:
            raise RecognitionEngineError(
                "Vision is not available. This backend requires macOS with pyobjc-framework-Vision "
                f"installed (running on {platform.system()})."
            )
        if framework == "livetext" and not OCRMAC_AVAILABLE:
            raise RecognitionEngineError(
                "ocrmac is not available. LiveText requires macOS with ocrmac installed "
                f"(running on {platform.system()})."
            )

        langs = k.pop("languages", None) or k.pop("lang", None)
        if isinstance(langs, str):
            langs = [langs]
        self.language_preference: Optional[List[str]] = [str(l) for l in langs] if langs else None

        level = str(k.pop("recognition_level", "accurate")).strip().lower()
        if level not in _LEVELS:
            raise ValueError(f"Unknown recognition level {level!r}, expected one of {_LEVELS}")
        self.recognition_level = level
        self.language_correction = bool(k.pop("language_correction", True))

        for junk in ("gpu", "use_gpu"):
            k.pop(junk, None)
        if k:
            logger.debug("Ignoring unsupported Vision backend options, %s", sorted(k))

    def recognize(self, data: bytes, width: int, height: int) -> List[RawObservation]:
        if self.framework == "livetext":
            return self._recognize_livetext(data)
        return self._recognize_vision(data)

    # -----------------------------
    # Vision
    # -----------------------------
    def _build_request(self):
        request = Vision.VNRecognizeTextRequest.alloc().init()
        if hasattr(Vision, "VNRecognizeTextRequestRevision3"):
            request.setRevision_(Vision.VNRecognizeTextRequestRevision3)
        if self.recognition_level == "fast":
            request.setRecognitionLevel_(Vision.VNRequestTextRecognitionLevelFast)
        else:
            request.setRecognitionLevel_(Vision.VNRequestTextRecognitionLevelAccurate)
        request.setUsesLanguageCorrection_(self.language_correction)
        if self.language_preference:
            request.setRecognitionLanguages_(self.language_preference)
        elif hasattr(request, "setAutomaticallyDetectsLanguage_"):
            request.setAutomaticallyDetectsLanguage_(True)
        return request

    def _recognize_vision(self, data: bytes) -> List[RawObservation]:
        observations: List[RawObservation] = []
        with objc.autorelease_pool():
            request = self._build_request()
            ns_data = NSData.dataWithBytes_length_(data, len(data))
            handler = Vision.VNImageRequestHandler.alloc().initWithData_options_(ns_data, None)
            ok, error = handler.performRequests_error_([request], None)
            if not ok:
                raise RecognitionEngineError(f"Vision request failed, {error}")

            for observation in request.results() or []:
                candidates = observation.topCandidates_(1)
                if not candidates:
                    continue
                candidate = candidates[0]
                text = str(candidate.string())
                if not text:
                    continue
                corners = [
                    observation.topLeft(),
                    observation.topRight(),
                    observation.bottomRight(),
                    observation.bottomLeft(),
                ]
                observations.append(
                    RawObservation(
                        text=text,
                        corners=[Point(float(c.x), float(c.y)) for c in corners],
                        confidence=float(candidate.confidence()),
                    )
                )
        return observations

    # -----------------------------
    # LiveText (ocrmac)
    # -----------------------------
    def _recognize_livetext(self, data: bytes) -> List[RawObservation]:
        # ocrmac.OCR wants a file path, so spill the bytes to a temp file
        temp_fd, temp_path = tempfile.mkstemp(prefix="macocr_", suffix=".img")
        try:
            with os.fdopen(temp_fd, "wb") as f:
                f.write(data)
            annotations = ocrmac.OCR(
                temp_path,
                framework="livetext",
                language_preference=self.language_preference,
            ).recognize()
        finally:
            Path(temp_path).unlink(missing_ok=True)

        observations: List[RawObservation] = []
        for text, confidence, box in annotations:
            if not text:
                continue
            x, y, w, h = (float(v) for v in box)
            observations.append(
                RawObservation(
                    text=str(text),
                    corners=normalized_rect_to_corners(x, y, w, h),
                    confidence=float(confidence) if confidence is not None else None,
                )
            )
        return observations
