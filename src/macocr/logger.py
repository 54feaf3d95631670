# src/macocr/logger.py

import logging
import sys
from pathlib import Path
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from typing import Any, Optional, Union

# --- Custom Log Level for Progress ---
PROGRESS = 25
logging.addLevelName(PROGRESS, "PROGRESS")

def progress(self, msg, *args, **kwargs):
    if self.isEnabledFor(PROGRESS):
        self._log(PROGRESS, msg, args, **kwargs)

logging.Logger.progress = progress

CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s %(message)s"
FILE_FORMAT = "%(asctime)s | %(processName)-15s | %(levelname)-8s | %(message)s"

# --- Custom Filters ---
class ExcludeLevelFilter(logging.Filter):
    def __init__(self, levelno: int):
        super().__init__()
        self.levelno = levelno
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno != self.levelno

# --- Main Configuration Function ---
def setup_logging(
    log_queue: Any,
    *,
    level: int = logging.INFO,
    file_path: Optional[Union[str, Path]] = None,
    file_level: Optional[int] = None,
    stream=None,
) -> QueueListener:
    """
    Sets up the logging listener architecture.

    Args:
        log_queue: The queue that this process and any workers log to.
        level: The base logging level for console output.
        file_path: Path to the persistent log file.
        file_level: The logging level for the file.
        stream: Console stream, stderr by default so stdout stays clean for results.

    Returns:
        A QueueListener instance. You must call .start() on it.
    """
    handlers = []

    # Console handler, progress records are left to the progress bar
    ch = logging.StreamHandler(stream or sys.stderr)
    ch.setLevel(level)
    ch.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    ch.addFilter(ExcludeLevelFilter(PROGRESS))
    handlers.append(ch)

    # File handler
    if file_path:
        fp = Path(file_path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(fp, maxBytes=5*1024*1024, backupCount=2, encoding="utf-8")
        fh.setLevel(file_level if file_level is not None else level)
        fh.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(fh)

    # The listener pulls from the queue and pushes to the configured handlers.
    listener = QueueListener(log_queue, *handlers, respect_handler_level=True)
    configure_worker_logging(log_queue)
    return listener

def configure_worker_logging(log_queue: Any):
    """
    Route the "macocr" logger into the queue.
    Also used as the initializer of each multiprocessing.Pool worker, where it
    removes any handlers inherited from the parent process.
    """
    logger = logging.getLogger("macocr")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    logger.handlers.clear()

    qh = QueueHandler(log_queue)
    logger.addHandler(qh)
