# src/macocr/cli.py
from __future__ import annotations

import argparse
import ast
import json
import logging
import multiprocessing as mp
import queue
import re
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    MAX_UPLOAD_BYTES,
    BatchConfig,
    ServerConfig,
    default_backend,
    parse_auth,
)
from .exceptions import RecognitionEngineError
from .logger import setup_logging
from .ocr_backends import get_engine

__all__ = ["run_batch", "run_server", "main"]

logger = logging.getLogger("macocr")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

# Helper

def _parse_backend_kwargs(val) -> dict:
    """
    Accept several syntaxes for --ocr-backend-kwargs:
      1) JSON (double quotes)                      {"languages":["en"],"psm":6}
      2) Python-literal dict with single quotes    {'languages': ['en'], 'psm': 6}
      3) key=value pairs separated by ;            languages=en,fr;psm=6
    """
    if isinstance(val, dict):
        return dict(val)
    if not isinstance(val, str):
        return {}

    s = val.strip()
    if not s:
        return {}
    # Strip outer quotes like '"{...}"' or "'{...}'"
    if len(s) >= 2 and s[0] in ("'", '"') and s[-1] == s[0]:
        s = s[1:-1].strip()

    try:
        parsed = json.loads(s)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    try:
        lit = ast.literal_eval(s)
        if isinstance(lit, dict):
            return lit
    except (ValueError, SyntaxError):
        pass

    # Fallback: key=value pairs
    out: dict = {}
    for part in re.split(r";\s*", s):
        if "=" not in part:
            continue
        k, v = part.split("=", 1)
        k = k.strip().strip('"\'')
        v = v.strip().strip('"\'')

        # List support like en,fr
        if "," in v:
            v = [x.strip() for x in v.split(",") if x.strip()]
        else:
            low = v.lower()
            if low in ("true", "false"):
                v = (low == "true")
            elif re.fullmatch(r"-?\d+", v):
                v = int(v)
            elif re.fullmatch(r"-?\d+\.\d*", v):
                v = float(v)

        out[k] = v

    if out:
        return out

    raise ValueError(f"Invalid --ocr-backend-kwargs. Could not parse: {val!r}")


def _normalize_common_backend_kwargs(d: dict) -> dict:
    """
    Backend-agnostic cleanup:
      - hyphen-case -> snake_case, lowercase keys
      - 'lang' -> 'languages', and "en,fr" -> ["en","fr"]
    """
    if not d:
        return {}
    out = {}
    for k, v in d.items():
        out[k.strip().lower().replace("-", "_")] = v

    if "languages" not in out and "lang" in out:
        out["languages"] = out.pop("lang")
    if "languages" in out:
        langs = out["languages"]
        if isinstance(langs, str):
            out["languages"] = [s.strip() for s in langs.split(",") if s.strip()]
        elif isinstance(langs, (set, tuple)):
            out["languages"] = list(langs)
    return out


def _size_arg(value: str) -> int:
    """Byte count, with an optional K/M/G suffix."""
    m = re.fullmatch(r"\s*(\d+)\s*([kmg]?)b?\s*", value.lower())
    if not m:
        raise argparse.ArgumentTypeError(f"Invalid size: {value!r}")
    n, unit = int(m.group(1)), m.group(2)
    return n * {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}[unit]


# -------------------------------
# CLI parsing
# -------------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="macocr",
        description="OCR images to text, in batch or as an HTTP service",
    )
    p.add_argument("files", nargs="*", type=Path, help="Input image files")

    mode = p.add_mutually_exclusive_group()
    mode.add_argument("-o", "--ocr", action="store_true",
                      help="Write a .txt next to each input instead of printing to stdout")
    mode.add_argument("-s", "--server", action="store_true", help="Run the HTTP service")

    srv = p.add_argument_group("HTTP service")
    srv.add_argument("-a", "--auth", default="", help="HTTP Basic Auth as username:password")
    srv.add_argument("-p", "--port", type=int, default=DEFAULT_PORT, help="HTTP port number")
    srv.add_argument("--host", default=DEFAULT_HOST, help="Host to bind")

    ocr = p.add_argument_group("Recognition")
    ocr.add_argument("-l", "--languages", nargs="+", help="Preferred language codes, e.g. en-US zh-Hans")
    ocr.add_argument(
        "--ocr-backend",
        default=None,
        help="Backend alias (vision, livetext, easyocr, tesseract) or dotted path to a backend class. "
             "Defaults to $MACOCR_BACKEND or 'vision'.",
    )
    ocr.add_argument(
        "--ocr-backend-kwargs",
        type=str,
        default="{}",
        help=('Backend init kwargs as JSON or key=value pairs, e.g. '
              '\'{"framework":"livetext"}\'  or  psm=6;oem=3'),
    )
    ocr.add_argument("--max-bytes", type=_size_arg, default=MAX_UPLOAD_BYTES,
                     help="Reject inputs and uploads larger than this (default 100M)")

    run = p.add_argument_group("Batch")
    run.add_argument("-w", "--workers", type=int, default=1, help="Number of worker processes for batch mode")
    run.add_argument("--error-log-path", type=Path, help="Append one JSON line per failed file here")

    log = p.add_argument_group("Logging")
    log.add_argument("--log-file", type=Path, help="Rotating log file")
    log.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def _backend_settings(args: argparse.Namespace):
    backend = args.ocr_backend or default_backend()
    kwargs = _normalize_common_backend_kwargs(_parse_backend_kwargs(args.ocr_backend_kwargs))
    if args.languages and "languages" not in kwargs:
        kwargs["languages"] = list(args.languages)
    return backend, kwargs


# -------------------------------
# Entry points
# -------------------------------

def run_server(args: argparse.Namespace) -> int:
    from .server import serve  # keep web deps out of plain batch runs

    config = ServerConfig(
        host=args.host,
        port=args.port,
        auth=parse_auth(args.auth),
        max_upload_bytes=args.max_bytes,
        log_level="debug" if args.verbose else "info",
    )
    backend, backend_kwargs = _backend_settings(args)
    try:
        engine = get_engine(backend, backend_kwargs)
    except RecognitionEngineError as e:
        logger.error("Cannot start server, %s", e)
        return EXIT_FAILURE

    logger.info("Starting server on %s:%s with backend %s", config.host, config.port, backend)
    try:
        serve(config, engine)
    except OSError as e:
        logger.error("Server failed, %s", e)
        return EXIT_FAILURE
    except SystemExit as e:
        # uvicorn exits with 1 when it cannot bind
        return EXIT_FAILURE if e.code else EXIT_OK
    return EXIT_OK


def run_batch(args: argparse.Namespace, log_queue=None) -> int:
    from .parallel import OCRRunner

    backend, backend_kwargs = _backend_settings(args)
    config = BatchConfig.from_dict({
        "export_txt": args.ocr,
        "num_workers": args.workers,
        "max_file_bytes": args.max_bytes,
        "ocr_backend": backend,
        "ocr_backend_kwargs": backend_kwargs,
        "error_log_path": args.error_log_path,
        "log_queue": log_queue,
    })

    # Engine problems are fatal before any file is touched
    try:
        engine = get_engine(backend, backend_kwargs)
    except RecognitionEngineError as e:
        logger.error("Cannot start OCR, %s", e)
        return EXIT_FAILURE

    report = OCRRunner(config, engine=engine).run(args.files)
    if report.failures:
        logger.warning("%d of %d files failed", report.failed, len(args.files))
    return report.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        parse_auth(args.auth)
        _parse_backend_kwargs(args.ocr_backend_kwargs)
    except ValueError as e:
        parser.error(str(e))
    if args.workers < 1:
        parser.error("--workers must be at least 1")
    if not args.server and not args.files:
        parser.error("no input files given (or use --server)")
    if args.server and args.files:
        logger.warning("Ignoring %d input files in server mode", len(args.files))

    level = logging.DEBUG if args.verbose else logging.INFO
    manager = None
    if not args.server and args.workers > 1:
        # workers are spawned, they need a process-safe queue
        manager = mp.get_context("spawn").Manager()
        log_queue = manager.Queue(-1)
    else:
        log_queue = queue.Queue(-1)

    listener = setup_logging(log_queue, level=level, file_path=args.log_file)
    listener.start()
    try:
        if args.server:
            return run_server(args)
        return run_batch(args, log_queue=log_queue if manager else None)
    except ValueError as e:
        logger.error("%s", e)
        return EXIT_USAGE
    finally:
        listener.stop()
        if manager is not None:
            manager.shutdown()


def entry_point():
    sys.exit(main())


if __name__ == "__main__":
    entry_point()
