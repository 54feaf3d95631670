# macocr/ocr_backends/tesseract_backend.py
from __future__ import annotations

from typing import List, Dict, Any, Tuple
import io
import os
import platform
import re
import shutil
from pathlib import Path

from PIL import Image
import pytesseract as pt

from ..exceptions import RecognitionEngineError
from ..geometry import pixel_quad_to_normalized
from ..models import RawObservation
from .base import BaseOCREngine


def _as_int(x, default: int) -> int:
    try:
        if isinstance(x, str):
            x = x.strip().rstrip(",}] ")
        return int(x)
    except (TypeError, ValueError):
        m = re.search(r"-?\d+", str(x))
        return int(m.group()) if m else default


def resolve_tesseract_cmd() -> str | None:
    # 1) explicit env override
    cmd = os.getenv("TESSERACT_CMD")
    if cmd and Path(cmd).exists():
        return cmd

    # 2) look on PATH
    cmd = shutil.which("tesseract")
    if cmd:
        return cmd

    # 3) common fallbacks by OS
    system = platform.system()
    if system == "Windows":
        candidates = [
            r"C:\Program Files\Tesseract-OCR\tesseract.exe",
            r"C:\Program Files (x86)\Tesseract-OCR\tesseract.exe",
        ]
    elif system == "Darwin":
        candidates = [
            "/opt/homebrew/bin/tesseract",   # Apple Silicon Homebrew
            "/usr/local/bin/tesseract",      # Intel Homebrew/MacPorts
        ]
    else:
        candidates = [
            "/usr/bin/tesseract",
            "/usr/local/bin/tesseract",
            "/snap/bin/tesseract",
        ]

    for p in candidates:
        if Path(p).exists():
            return p
    return None


# Map common codes to Tesseract's traineddata names
_TESS_LANG_MAP = {
    "en": "eng",
    "vi": "vie",
    "fr": "fra",
    "de": "deu",
    "es": "spa",
    "it": "ita",
    "pt": "por",
    "ja": "jpn",
    "ko": "kor",
    "zh-hans": "chi_sim",
    "zh-hant": "chi_tra",
}


def _norm_langs_to_tesseract(kwargs: Dict[str, Any]) -> str:
    langs = kwargs.pop("languages", None) or kwargs.pop("lang", None)
    if isinstance(langs, str):
        langs = [langs]
    if not langs:
        langs = ["en"]
    codes = []
    for l in langs:
        key = str(l).lower()
        code = _TESS_LANG_MAP.get(key) or _TESS_LANG_MAP.get(key.split("-")[0], key)
        codes.append(code)
    return "+".join(sorted(set(codes)))


class TesseractOCREngine(BaseOCREngine):
    """
    Pytesseract-based backend. Words from image_to_data are grouped into lines
    (block, paragraph, line) in reading order, each line becoming one observation.

    Kwargs supported (all optional):
      - languages / lang: list[str] or str, mapped to "eng", "vie", ...
      - tesseract_cmd: full path to tesseract binary
      - tessdata_prefix: path to tessdata directory
      - oem: 0..3 (default 3 = LSTM)
      - psm: page segmentation mode (default 3 = fully automatic)
      - extra_config: str of extra flags
    """

    def __init__(self, **kwargs: Dict[str, Any]):
        k = dict(kwargs)

        for junk in ("gpu", "use_gpu"):
            k.pop(junk, None)

        tesseract_cmd = k.pop("tesseract_cmd", None) or resolve_tesseract_cmd()
        if tesseract_cmd:
            pt.pytesseract.tesseract_cmd = str(tesseract_cmd)

        tessdata_prefix = k.pop("tessdata_prefix", None)
        if tessdata_prefix:
            os.environ["TESSDATA_PREFIX"] = str(tessdata_prefix)

        self.lang = _norm_langs_to_tesseract(k)

        oem = _as_int(k.pop("oem", 3), 3)
        psm = _as_int(k.pop("psm", 3), 3)
        extra_cfg = str(k.pop("extra_config", "")).strip()
        cfg_parts = [f"--oem {oem}", f"--psm {psm}"]
        if extra_cfg:
            cfg_parts.append(extra_cfg)
        self._config = " ".join(cfg_parts)

        # Fail at startup rather than on the first image
        try:
            pt.get_tesseract_version()
        except (pt.TesseractNotFoundError, OSError) as e:
            raise RecognitionEngineError(f"Tesseract binary not usable: {e}") from e

    def recognize(self, data: bytes, width: int, height: int) -> List[RawObservation]:
        with Image.open(io.BytesIO(data)) as im:
            rgb = im.convert("RGB")
        table = pt.image_to_data(rgb, lang=self.lang, config=self._config, output_type=pt.Output.DICT)

        # (block, par, line) -> [words, confidences, left, top, right, bottom]
        lines: Dict[Tuple[int, int, int], list] = {}
        for i, raw in enumerate(table.get("text", [])):
            text = str(raw or "").strip()
            conf = float(table["conf"][i])
            if not text or conf < 0:
                continue
            key = (table["block_num"][i], table["par_num"][i], table["line_num"][i])
            left, top = table["left"][i], table["top"][i]
            right, bottom = left + table["width"][i], top + table["height"][i]
            entry = lines.get(key)
            if entry is None:
                lines[key] = [[text], [conf], left, top, right, bottom]
            else:
                entry[0].append(text)
                entry[1].append(conf)
                entry[2] = min(entry[2], left)
                entry[3] = min(entry[3], top)
                entry[4] = max(entry[4], right)
                entry[5] = max(entry[5], bottom)

        observations: List[RawObservation] = []
        for words, confs, left, top, right, bottom in lines.values():
            quad = [(left, top), (right, top), (right, bottom), (left, bottom)]
            observations.append(
                RawObservation(
                    text=" ".join(words),
                    corners=pixel_quad_to_normalized(quad, width, height),
                    confidence=sum(confs) / len(confs) / 100.0,
                )
            )
        return observations
