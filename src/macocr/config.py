# macocr/config.py
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple
import os
import re

MAX_UPLOAD_BYTES = 100 * 1024 * 1024  # 100 MB
DEFAULT_PORT = 8000
DEFAULT_HOST = "0.0.0.0"
DEFAULT_BACKEND = "vision"

_AUTH_RE = re.compile(r"^[^:]+:[^:]+$")


def default_backend() -> str:
    """Engine used when none is given on the command line."""
    return os.environ.get("MACOCR_BACKEND", "").strip() or DEFAULT_BACKEND


def parse_auth(value: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Parse 'username:password'. Empty input disables auth.
    Raises ValueError on anything else that is not exactly one colon between
    two non-empty parts.
    """
    if not value:
        return None
    if not _AUTH_RE.match(value):
        raise ValueError("Auth must look like username:password")
    username, password = value.split(":", 1)
    return username, password


@dataclass
class BatchConfig:
    """Configuration for a batch (CLI) run."""
    export_txt: bool = False
    num_workers: int = 1
    max_file_bytes: int = MAX_UPLOAD_BYTES

    languages: List[str] = field(default_factory=list)
    ocr_backend: str = field(default_factory=default_backend)
    ocr_backend_kwargs: Dict[str, Any] = field(default_factory=dict)

    error_log_path: Optional[Path] = None
    show_progress: Optional[bool] = None  # None lets tqdm decide from the TTY

    log_queue: Optional[Any] = None

    def backend_kwargs(self) -> Dict[str, Any]:
        kw = dict(self.ocr_backend_kwargs or {})
        if self.languages and "languages" not in kw and "lang" not in kw:
            kw["languages"] = list(self.languages)
        return kw

    @classmethod
    def from_dict(cls, config_dict: dict):
        d = dict(config_dict)
        if isinstance(d.get("error_log_path"), str):
            d["error_log_path"] = Path(d["error_log_path"])
        # allow explicit None to mean use default
        for key in ["num_workers", "max_file_bytes", "ocr_backend", "languages"]:
            if d.get(key) is None:
                d.pop(key, None)
        cfg = cls(**d)
        if cfg.num_workers < 1:
            raise ValueError(f"num_workers must be at least 1, got {cfg.num_workers}")
        return cfg


@dataclass(frozen=True)
class ServerConfig:
    """Startup configuration for the upload service. Read-only once built."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    auth: Optional[Tuple[str, str]] = None
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    log_level: str = "info"

    def __post_init__(self):
        if not (0 < int(self.port) < 65536):
            raise ValueError(f"Port out of range, {self.port}")
        if self.max_upload_bytes <= 0:
            raise ValueError("max_upload_bytes must be positive")
