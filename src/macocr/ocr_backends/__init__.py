# macocr/ocr_backends/__init__.py
from __future__ import annotations

import importlib
import logging
from typing import Any, Dict, Optional

from ..exceptions import MacOCRError, RecognitionEngineError
from .base import BaseOCREngine

__all__ = ["BaseOCREngine", "BACKEND_ALIASES", "normalize_backend_alias", "import_engine_class", "get_engine"]

logger = logging.getLogger("macocr")

BACKEND_ALIASES = {
    # Apple Vision (ocrmac)
    "vision": "macocr.ocr_backends.vision_backend.VisionOCREngine",
    "livetext": "macocr.ocr_backends.vision_backend.VisionOCREngine",
    "macos": "macocr.ocr_backends.vision_backend.VisionOCREngine",
    # EasyOCR
    "easy": "macocr.ocr_backends.easyocr_backend.EasyOCREngine",
    "easyocr": "macocr.ocr_backends.easyocr_backend.EasyOCREngine",
    # Tesseract (pytesseract)
    "tess": "macocr.ocr_backends.tesseract_backend.TesseractOCREngine",
    "tesseract": "macocr.ocr_backends.tesseract_backend.TesseractOCREngine",
    "pytesseract": "macocr.ocr_backends.tesseract_backend.TesseractOCREngine",
}


def normalize_backend_alias(name: str) -> str:
    """
    Resolve short aliases (case-insensitive) to a dotted 'module.Class' path.
    Anything that is not an alias is returned unchanged.
    """
    original = (name or "").strip().strip('"\'')
    return BACKEND_ALIASES.get(original.lower(), original)


def import_engine_class(dotted: str) -> type:
    mod_path, _, attr = dotted.rpartition(".")
    if not mod_path or not attr:
        raise ValueError(f"OCR backend must be an alias or 'module.Class', got: {dotted!r}")
    try:
        mod = importlib.import_module(mod_path)
    except ImportError as e:
        raise RecognitionEngineError(f"Cannot import OCR backend module {mod_path!r} ({e})") from e
    try:
        return getattr(mod, attr)
    except AttributeError as e:
        raise ValueError(f"Backend class not found, {dotted}") from e


def get_engine(name: str, backend_kwargs: Optional[Dict[str, Any]] = None) -> BaseOCREngine:
    """
    Build an engine instance from an alias or dotted path.

    Raises:
        ValueError: the name does not resolve to a class
        RecognitionEngineError: the engine cannot run in this environment
    """
    dotted = normalize_backend_alias(name)
    engine_cls = import_engine_class(dotted)
    logger.debug("Initializing OCR backend, %s", dotted)
    try:
        engine = engine_cls(**(backend_kwargs or {}))
    except MacOCRError:
        raise
    except (TypeError, ValueError):
        raise
    except Exception as e:
        raise RecognitionEngineError(f"OCR backend initialization failed for {dotted} ({e})") from e
    if not isinstance(engine, BaseOCREngine):
        raise ValueError(f"{dotted} is not a BaseOCREngine")
    return engine
