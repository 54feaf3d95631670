# macocr/ocr_backends/easyocr_backend.py
from __future__ import annotations

from typing import List, Dict, Any
import io
import os
import time
import logging
import errno
import warnings
import numpy as np
from PIL import Image

import easyocr

from ..geometry import pixel_quad_to_normalized
from ..models import RawObservation
from .base import BaseOCREngine

logger = logging.getLogger("macocr")


# -----------------------------
# Helpers
# -----------------------------

def _as_bool(x, default=True) -> bool:
    if isinstance(x, bool):
        return x
    if isinstance(x, str):
        s = x.strip().lower()
        if s in ("true", "1", "yes", "y", "on"):
            return True
        if s in ("false", "0", "no", "n", "off"):
            return False
    return default


def _norm_langs_to_easyocr(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Accept languages or lang and normalize to a list of EasyOCR codes."""
    k = dict(kwargs or {})
    langs = k.pop("languages", None) or k.pop("lang", None)
    if isinstance(langs, str):
        langs = [langs]
    if not langs:
        langs = ["en"]
    # EasyOCR wants bare codes, "en-US" -> "en"
    k["languages"] = [str(l).strip().split("-")[0] for l in langs if l]
    return k


def _decode_rgb(data: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(data)) as im:
        return np.array(im.convert("RGB"))


def _torch_cuda_available() -> bool:
    try:
        import torch
        return bool(torch.cuda.is_available())
    except ImportError:
        return False


def _acquire_file_lock(lock_path: str, timeout: float = 120.0, poll: float = 0.2):
    """
    Inter-process lock using atomic file create.
    Keeps parallel batch workers from downloading EasyOCR models concurrently.
    """
    start = time.perf_counter()
    lock_dir = os.path.dirname(lock_path) or "."
    os.makedirs(lock_dir, exist_ok=True)
    while True:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            return fd
        except OSError as e:
            if e.errno != errno.EEXIST:
                raise
            if time.perf_counter() - start > timeout:
                logger.warning("Model init lock timeout; proceeding without lock: %s", lock_path)
                return None
            time.sleep(poll)


def _release_file_lock(fd, lock_path: str):
    if fd is None:
        return
    try:
        os.close(fd)
        os.unlink(lock_path)
    except OSError:
        logger.debug("Failed to release lock: %s", lock_path, exc_info=True)


# -----------------------------
# Backend
# -----------------------------

class EasyOCREngine(BaseOCREngine):
    """
    EasyOCR adapter. Each detected line comes back as a pixel quadrilateral
    (top-left origin), which is mapped into the normalized observation space.

    Supported kwargs (all optional):
      - languages / lang: list[str] | str (default ["en"])
      - gpu / use_gpu: bool (defaults to True if CUDA is available, else False)
      - model_storage_directory: str (shared cache dir recommended)
      - download_enabled: bool (default True)
      - decoder: "greedy" | "beamsearch", beam_width: int
    """

    def __init__(self, **kwargs: Dict[str, Any]):
        k = _norm_langs_to_easyocr(kwargs)

        want_gpu = _as_bool(k.pop("gpu", k.pop("use_gpu", True)), True)
        use_gpu = bool(want_gpu and _torch_cuda_available())

        model_dir = k.pop("model_storage_directory", None)
        download_enabled = _as_bool(k.pop("download_enabled", True), True)
        verbose = _as_bool(k.pop("verbose", False), False)

        decoder = str(k.pop("decoder", "greedy")).strip().lower()
        self._decoder = decoder if decoder in ("greedy", "beamsearch") else "greedy"
        try:
            beam_width = int(k.pop("beam_width", 10))
        except (TypeError, ValueError):
            beam_width = 10
        self._beam_width = max(1, min(beam_width, 20))

        langs = k.pop("languages")
        if k:
            logger.debug("Ignoring unsupported EasyOCR options, %s", sorted(k))

        cache_root = model_dir or os.path.join(os.path.expanduser("~"), ".cache", "easyocr")
        lock_path = os.path.join(cache_root, "model_init.lock")
        fd = _acquire_file_lock(lock_path, timeout=180.0)
        try:
            try:
                self.reader = easyocr.Reader(
                    langs,
                    gpu=use_gpu,
                    model_storage_directory=model_dir,
                    download_enabled=download_enabled,
                    verbose=verbose,
                )
            except Exception as e:
                if not use_gpu:
                    raise
                logger.warning("EasyOCR GPU init failed, falling back to CPU: %s", e)
                self.reader = easyocr.Reader(
                    langs,
                    gpu=False,
                    model_storage_directory=model_dir,
                    download_enabled=download_enabled,
                    verbose=verbose,
                )
        finally:
            _release_file_lock(fd, lock_path)

    def recognize(self, data: bytes, width: int, height: int) -> List[RawObservation]:
        rgb = _decode_rgb(data)

        # suppress runtime overflow spam from beam search
        with np.errstate(over="ignore", invalid="ignore"):
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", category=RuntimeWarning)
                lines = self.reader.readtext(
                    rgb,
                    detail=1,
                    paragraph=False,
                    decoder=self._decoder,
                    beamWidth=self._beam_width,
                )

        observations: List[RawObservation] = []
        for box, text, conf in lines:
            if not text:
                continue
            observations.append(
                RawObservation(
                    text=str(text),
                    corners=pixel_quad_to_normalized(box, width, height),
                    confidence=float(conf),
                )
            )
        return observations
