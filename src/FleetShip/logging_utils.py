"""Structured logging helpers shared across distribution and install runs."""

from __future__ import annotations

import gzip
import json
import logging
import os
import re
import sys
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

from .settings import LOG_DIR

__all__ = ["JSONFormatter", "mask_sensitive_data", "setup_logging", "get_logger"]

LOGGER_NAME = "FleetShip"

_SENSITIVE_KEYS = {"passphrase", "password", "secret", "secret_key", "token"}
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9+/=_-]{64,}$")


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the package logger or one of its children."""

    return logging.getLogger(f"{LOGGER_NAME}.{name}" if name else LOGGER_NAME)


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Return a copy of ``payload`` with secret-looking fields masked."""

    def _mask_value(value: object, key_hint: Optional[str] = None) -> object:
        if isinstance(value, dict):
            return {key: _mask_value(item, str(key).lower()) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(_mask_value(item, key_hint) for item in value)
        if key_hint in _SENSITIVE_KEYS:
            return "***masked***"
        if isinstance(value, str) and _TOKEN_PATTERN.match(value):
            return "***masked***"
        return value

    return {key: _mask_value(value, key.lower()) for key, value in payload.items()}


class JSONFormatter(logging.Formatter):
    """Formatter emitting masked JSON log entries."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "stage": getattr(record, "stage", None),
            "host": getattr(record, "host", None),
            "package": getattr(record, "package", None),
        }
        if hasattr(record, "extra_fields") and isinstance(record.extra_fields, dict):
            payload.update(record.extra_fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(payload))


def _compress_old_log(path: Path) -> None:
    """Compress ``path`` into a ``.gz`` file and remove the original."""

    compressed_path = path.with_suffix(path.suffix + ".gz")
    with path.open("rb") as source, gzip.open(compressed_path, "wb") as target:
        target.write(source.read())
    path.unlink(missing_ok=True)


def _cleanup_logs(log_dir: Path, retention_days: int) -> List[str]:
    """Compress expired JSON-lines logs and purge expired archives."""

    actions: List[str] = []
    now = datetime.now(timezone.utc)
    retention_delta = timedelta(days=retention_days)
    for file in log_dir.glob("*.jsonl"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta:
            _compress_old_log(file)
            actions.append(f"Compressed {file.name}")
    for file in log_dir.glob("*.jsonl.gz"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta * 2:
            file.unlink(missing_ok=True)
            actions.append(f"Deleted expired archive {file.name}")
    return actions


def setup_logging(
    *,
    level: str = "INFO",
    retention_days: int = 30,
    max_log_size_mb: int = 10,
    log_dir: Optional[Path] = None,
    propagate: bool = False,
    stream=None,
) -> logging.Logger:
    """Configure the ``FleetShip`` logger with console output and a JSON-lines file.

    The log directory is ``log_dir`` when given, otherwise ``FLEETSHIP_LOG_DIR``,
    otherwise :data:`LOG_DIR`.  When the directory cannot be created (an
    unprivileged run against the system default) only the console handler is
    installed.  Calling this again replaces the handlers it installed earlier.
    """

    if log_dir is not None:
        resolved_dir: Optional[Path] = log_dir
    else:
        env_value = os.environ.get("FLEETSHIP_LOG_DIR", "").strip()
        resolved_dir = Path(env_value) if env_value else LOG_DIR

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_fleetship_managed", False):
            logger.removeHandler(handler)
            if isinstance(handler, logging.StreamHandler) and not isinstance(
                handler, logging.FileHandler
            ):
                continue
            handler.close()

    stream_handler = logging.StreamHandler(stream or sys.stdout)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler._fleetship_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    try:
        resolved_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.debug("file logging disabled: %s", exc, extra={"stage": "startup"})
        resolved_dir = None

    if resolved_dir is not None:
        _cleanup_logs(resolved_dir, retention_days)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            resolved_dir / f"fleetship-{today}.jsonl",
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=5,
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._fleetship_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = propagate
    return logger
