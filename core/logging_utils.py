"""PeerBeacon logging: agent log set-up and JSONL registry snapshots."""
from __future__ import annotations
import datetime
import json
import logging
import logging.handlers
from pathlib import Path
from typing import Any, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 5


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def setup_rotating_logger(name: str, log_dir: Optional[Path], level: int = logging.DEBUG,
                          console_level: int = logging.INFO) -> logging.Logger:
    """
    Attach console output, plus a rotating <name>.log file when log_dir is
    given. Calling it again for a configured logger only updates its level.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.addHandler(_handler(logging.handlers.RotatingFileHandler(
            log_dir / f"{name}.log", maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
        ), level))
    logger.addHandler(_handler(logging.StreamHandler(), console_level))
    return logger


def close_logger(name: str) -> None:
    """Detach and close every handler setup_rotating_logger added."""
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def jsonl_path(log_dir: Path, day: Optional[datetime.date] = None) -> Path:
    """Daily snapshot file, dated in UTC: peerbeacon-YYYY-MM-DD.jsonl"""
    day = day or datetime.datetime.now(datetime.timezone.utc).date()
    return log_dir / f"peerbeacon-{day.isoformat()}.jsonl"


def log_jsonl(log_dir: Path, record: dict[str, Any]) -> Path:
    """Append one record as a JSON line and return the file written."""
    log_dir.mkdir(parents=True, exist_ok=True)
    path = jsonl_path(log_dir)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, separators=(",", ":"), default=str) + "\n")
    return path
