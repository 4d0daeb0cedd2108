# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Process-wide logging setup for scripts and the admin API."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def default_log_path() -> Path:
    return Path.home() / ".reposcope" / "logs" / "server.log"


def setup_logging(config: Config) -> None:
    """Configure root logging from ``server.log_level`` and ``server.log_file``."""
    level = getattr(logging, str(config.log_level).upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
        )

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    logging.getLogger(__name__).debug("Logging configured at level %s", config.log_level)
