# src/macocr/batch_worker.py
from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import FileProcessingError, MacOCRError, PayloadTooLargeError
from .logger import configure_worker_logging
from .models import FileOutcome
from .ocr_backends import get_engine
from .ocr_backends.base import BaseOCREngine
from .processors import ocr_bytes

logger = logging.getLogger("macocr")

# One engine instance per worker process
ocr_engine: Optional[BaseOCREngine] = None


def initialize_batch_worker(log_queue, backend_path: str, backend_kwargs: dict):
    """
    Called once in each worker process.
    Loads the backend class and creates the engine instance.
    """
    if log_queue is not None:
        configure_worker_logging(log_queue)
    pid = os.getpid()
    logger.info("Initializing batch worker, backend, %s, pid, %s", backend_path, pid)

    global ocr_engine
    try:
        ocr_engine = get_engine(backend_path, backend_kwargs)
    except Exception:
        logger.exception("Backend initialization failed for %s", backend_path)
        raise

    logger.debug("Batch worker ready, pid, %s", pid)


def text_output_path(source_path: Path) -> Path:
    """Sibling .txt with the same base name."""
    return source_path.parent / f"{source_path.stem}.txt"


def read_input_file(source_path: Path, max_file_bytes: int) -> bytes:
    """Read one input file, refusing oversize files before touching their contents."""
    try:
        size = source_path.stat().st_size
    except OSError as e:
        raise FileProcessingError(f"Cannot read {source_path}, {e.strerror or e}") from e
    if size > max_file_bytes:
        raise PayloadTooLargeError(f"{source_path} is {size} bytes, the limit is {max_file_bytes}")
    try:
        return source_path.read_bytes()
    except OSError as e:
        raise FileProcessingError(f"Cannot read {source_path}, {e.strerror or e}") from e


def write_text_file(path: Path, text: str) -> None:
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise FileProcessingError(f"Cannot write {path}, {e.strerror or e}") from e


def run_file(source_path: Path, engine: BaseOCREngine, *, export_txt: bool, max_file_bytes: int) -> FileOutcome:
    """
    Process a single file. Library errors are captured in the outcome,
    so one bad file never stops its siblings.
    """
    start = time.perf_counter()
    path_str = str(source_path)
    try:
        data = read_input_file(source_path, max_file_bytes)
        result = ocr_bytes(data, engine, message=f"{path_str} recognized")

        output_path = None
        if export_txt:
            out = text_output_path(source_path)
            write_text_file(out, result.text)
            output_path = str(out)

        logger.progress("%s, %d regions", path_str, len(result.regions))
        return FileOutcome(
            source_path=path_str,
            ok=True,
            text=result.text,
            output_path=output_path,
            duration_seconds=time.perf_counter() - start,
        )
    except MacOCRError as e:
        logger.error("Failed to process %s, %s: %s", path_str, e.kind, e)
        return FileOutcome(
            source_path=path_str,
            ok=False,
            error_kind=e.kind,
            error=str(e),
            duration_seconds=time.perf_counter() - start,
        )


def process_file_task(task: Dict[str, Any]) -> FileOutcome:
    """Pool entry point, uses the engine built by initialize_batch_worker."""
    if ocr_engine is None:
        raise RuntimeError("Batch worker called before initialization")
    return run_file(
        Path(task["source_path"]),
        ocr_engine,
        export_txt=bool(task.get("export_txt", False)),
        max_file_bytes=int(task["max_file_bytes"]),
    )
