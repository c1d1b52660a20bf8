from __future__ import annotations

import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


def setup_logger(
    log_dir: Optional[str | Path] = None,
    *,
    level: int | str = logging.INFO,
    filename_prefix: str = "coordinator",
    console: bool = True,
    rotate: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
    force: bool = False,
) -> Optional[Path]:
    """
    Configure root logging for a worker process.

    Writes to a timestamped file under ``log_dir`` when one is given and to
    stderr when ``console`` is set. Returns the log file path, if any.
    """
    root = logging.getLogger()
    if force:
        for h in list(root.handlers):
            root.removeHandler(h)

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root.setLevel(level)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_path: Optional[Path] = None
    if log_dir is not None:
        directory = Path(log_dir).expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = directory / f"{filename_prefix}_{ts}.log"
        if rotate:
            fhandler: logging.Handler = RotatingFileHandler(
                log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        else:
            fhandler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
        fhandler.setLevel(level)
        fhandler.setFormatter(fmt)
        root.addHandler(fhandler)

    if console:
        shandler = logging.StreamHandler()
        shandler.setLevel(level)
        shandler.setFormatter(fmt)
        root.addHandler(shandler)

    if log_path is not None:
        root.info("Logging to: %s", str(log_path))
    return log_path


def mask_identity(identity: str) -> str:
    """Mask an account identity for log output: ``alice@x.com`` -> ``ali***@x.com``."""
    if not identity:
        return "(empty)"
    if "@" not in identity:
        return f"{identity[:3]}***"
    local, domain = identity.split("@", 1)
    head = local[:3] if len(local) > 3 else local[:1]
    return f"{head}***@{domain}"
