"""Logging setup for processes that run the pipeline (the CLI runner, scripts).

Library code only ever calls logging.getLogger(__name__); handlers are attached
here, to the `beacon` logger, so an embedding application's root logger is left
alone.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty at INFO; only their warnings are interesting next to pipeline logs.
_NOISY = ("httpx", "httpcore", "aiosqlite")


def setup_logging(project_root: Path, settings: dict[str, Any]) -> logging.Logger:
    """Attach a rotating file handler (and optionally stderr) to the `beacon` logger."""
    cfg = settings.get("logging") or {}
    level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    log_path = project_root / cfg.get("file", "data/logs/beacon.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
            backupCount=int(cfg.get("backup_count", 3)),
            encoding="utf-8",
        )
    ]
    if cfg.get("log_to_console", False):
        handlers.append(logging.StreamHandler())

    beacon_logger = logging.getLogger("beacon")
    beacon_logger.setLevel(level)
    for old in beacon_logger.handlers[:]:
        beacon_logger.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        beacon_logger.addHandler(handler)

    for name in _NOISY:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return beacon_logger
