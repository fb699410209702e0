"""logging setup.

- detailed log: `<agents_root>/.burrow/logs/burrow.log`
- per-agent queue events: `<agent>/logs/queue.log` (written by the queue)
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path


def setup_logging(*, root: Path, level: str = "INFO", console: bool = False) -> Path:
    log_dir = root / ".burrow" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "burrow.log"

    # configure once per process
    if getattr(setup_logging, "_configured", False):
        return log_path

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler = RotatingFileHandler(
        log_path,
        maxBytes=2_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    handler.setFormatter(fmt)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.addHandler(handler)

    if console:
        stream = logging.StreamHandler()
        stream.setFormatter(fmt)
        root_logger.addHandler(stream)

    # noisy lib
    logging.getLogger("watchdog").setLevel(logging.WARNING)

    setup_logging._configured = True  # type: ignore[attr-defined]
    return log_path
