from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List

from voleveler.common.env import Env
from voleveler.common.paths import logs_path, storage_root


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(service)s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_CONFIGURED_FOR: set[str] = set()


class _ServiceFilter(logging.Filter):
    """Stamps records with the running service name (leveler, doctor, ...)."""

    def __init__(self, service: str):
        super().__init__()
        self._service = service

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not hasattr(record, "service"):
            record.service = self._service
        return True


def _log_level() -> str:
    raw = os.environ.get("VOLEVELER_LOG_LEVEL") or os.environ.get("LOG_LEVEL") or "INFO"
    return raw.upper().strip() or "INFO"


def _handlers(env: Env, service: str) -> List[logging.Handler]:
    log_dir = storage_root(env) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return [
        logging.StreamHandler(sys.stdout),
        RotatingFileHandler(
            filename=str(log_dir / f"{service}.log"),
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        ),
    ]


def setup_logging(env: Env, *, service: str) -> None:
    """Configure root logging once per service: stdout plus storage/logs/<service>.log.

    Per-batch progress lines go to a separate plain file, see append_batch_log.
    """
    if service in _CONFIGURED_FOR:
        return

    root = logging.getLogger()
    root.setLevel(_log_level())
    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    for handler in _handlers(env, service):
        handler.setFormatter(fmt)
        handler.addFilter(_ServiceFilter(service))
        root.addHandler(handler)

    _CONFIGURED_FOR.add(service)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def append_batch_log(env: Env, batch_id: str, line: str) -> None:
    """Append one user-facing progress line to storage/logs/batch_<id>.log."""
    p = logs_path(env, batch_id)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", encoding="utf-8") as f:
        f.write(line.rstrip() + "\n")


def safe_path_basename(value: str, *, fallback: str) -> str:
    """Engine file names never carry directories."""
    name = Path(str(value)).name
    return name or fallback
