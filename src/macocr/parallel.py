# macocr/parallel.py
from __future__ import annotations

import json
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, TextIO
import multiprocessing as mp

from tqdm import tqdm

from .batch_worker import initialize_batch_worker, process_file_task, run_file
from .config import BatchConfig
from .models import FileOutcome
from .ocr_backends import get_engine
from .ocr_backends.base import BaseOCREngine

logger = logging.getLogger("macocr")

SHUTDOWN_REQUESTED = False

def _graceful_shutdown_handler(signum, frame):
    """
    Signal handler that sets the global shutdown flag.
    A second signal exits immediately.
    """
    global SHUTDOWN_REQUESTED
    if not SHUTDOWN_REQUESTED:
        logger.warning("Shutdown signal received! Finishing current file before exiting.")
        SHUTDOWN_REQUESTED = True
    else:
        logger.error("Second shutdown signal received! Forcing an immediate exit.")
        sys.exit(1)


@dataclass
class BatchReport:
    processed: int = 0
    failures: List[FileOutcome] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def exit_code(self) -> int:
        return 1 if self.failures else 0


class OCRRunner:
    """
    Batch Runner. Every file goes through read, recognize, assemble and output
    on its own; failures are reported per file and the batch carries on.
    """

    def __init__(self, config: BatchConfig, engine: Optional[BaseOCREngine] = None,
                 stdout: Optional[TextIO] = None):
        self.config = config
        self._engine = engine
        self.stdout = stdout or sys.stdout

    # -----------------------------
    # Logging helpers
    # -----------------------------
    def _log_error(self, outcome: FileOutcome):
        if not self.config.error_log_path:
            return
        try:
            self.config.error_log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config.error_log_path, "a", encoding="utf-8") as f:
                log_entry = {
                    "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
                    "source_path": outcome.source_path,
                    "error_kind": outcome.error_kind,
                    "error_reason": outcome.error,
                }
                f.write(json.dumps(log_entry, ensure_ascii=False) + "\n")
        except OSError:
            logger.exception("Failed to write error log")

    # -----------------------------
    # Output
    # -----------------------------
    def _emit(self, outcome: FileOutcome, report: BatchReport):
        report.processed += 1
        if not outcome.ok:
            report.failures.append(outcome)
            self._log_error(outcome)
            print(f"{outcome.source_path}: {outcome.error_kind}: {outcome.error}", file=sys.stderr)
            return
        if self.config.export_txt:
            print(f"{outcome.source_path} --> {outcome.output_path}", file=self.stdout)
        else:
            print(outcome.text, file=self.stdout)
        self.stdout.flush()

    @property
    def engine(self) -> BaseOCREngine:
        if self._engine is None:
            self._engine = get_engine(self.config.ocr_backend, self.config.backend_kwargs())
        return self._engine

    # -----------------------------
    # Execution strategies
    # -----------------------------
    def _iter_sequential(self, paths: Sequence[Path]) -> Iterator[FileOutcome]:
        engine = self.engine
        for path in paths:
            if SHUTDOWN_REQUESTED:
                return
            yield run_file(
                path, engine,
                export_txt=self.config.export_txt,
                max_file_bytes=self.config.max_file_bytes,
            )

    def _iter_pool(self, paths: Sequence[Path]) -> Iterator[FileOutcome]:
        ctx = mp.get_context("spawn")
        tasks = [
            {
                "source_path": str(p),
                "export_txt": self.config.export_txt,
                "max_file_bytes": self.config.max_file_bytes,
            }
            for p in paths
        ]
        processes = min(self.config.num_workers, len(tasks))
        logger.info("Starting %d batch workers", processes)
        with ctx.Pool(
            processes=processes,
            initializer=initialize_batch_worker,
            initargs=(self.config.log_queue, self.config.ocr_backend, self.config.backend_kwargs()),
        ) as pool:
            # imap keeps input order so stdout output is stable
            for outcome in pool.imap(process_file_task, tasks):
                if SHUTDOWN_REQUESTED:
                    logger.info("Shutdown requested, terminating worker pool")
                    pool.terminate()
                    return
                yield outcome

    # -----------------------------
    def run(self, paths: Iterable[Path]) -> BatchReport:
        paths = [Path(p) for p in paths]
        report = BatchReport()
        if not paths:
            logger.info("No files to process")
            return report

        logger.info("Run started, %d files", len(paths))
        global SHUTDOWN_REQUESTED
        SHUTDOWN_REQUESTED = False
        previous_handlers = {
            sig: signal.signal(sig, _graceful_shutdown_handler) for sig in (signal.SIGINT, signal.SIGTERM)
        }

        iterate: Callable[[Sequence[Path]], Iterator[FileOutcome]]
        if self.config.num_workers > 1 and len(paths) > 1:
            iterate = self._iter_pool
        else:
            iterate = self._iter_sequential

        start = time.perf_counter()
        try:
            for outcome in tqdm(iterate(paths), total=len(paths), desc="Recognizing",
                                disable=self._progress_disabled(), file=sys.stderr):
                self._emit(outcome, report)
        finally:
            for sig, handler in previous_handlers.items():
                signal.signal(sig, handler)

        # anything not reached because of a shutdown counts as failed
        for path in paths[report.processed:]:
            outcome = FileOutcome(source_path=str(path), ok=False, error_kind="Cancelled",
                                  error="Not processed, shutdown requested")
            report.failures.append(outcome)
            self._log_error(outcome)

        logger.info(
            "Run finished, %d files, %d failed, %.2fs",
            len(paths), report.failed, time.perf_counter() - start,
        )
        return report

    def _progress_disabled(self) -> Optional[bool]:
        show = self.config.show_progress
        if show is None:
            return None  # tqdm disables itself on non-TTY
        return not show
