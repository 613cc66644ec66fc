from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

CONSOLE_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s:%(lineno)d %(message)s"
LEVEL_ENV = "DUTY_LOG_LEVEL"
FILE_ENV = "DUTY_LOG_FILE"


def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    app_name: str = "duty",
) -> logging.Logger:
    """Attach console (and optionally file) handlers to the ``duty`` logger tree.

    Arguments win over ``DUTY_LOG_LEVEL`` / ``DUTY_LOG_FILE``. Calling it again
    replaces the handlers instead of stacking them.
    """
    level = logging.getLevelName((log_level or os.environ.get(LEVEL_ENV) or "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO
    target = log_file or os.environ.get(FILE_ENV)

    root = logging.getLogger(app_name)
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
    root.addHandler(console)

    if target:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(file_handler)
    return root


def get_logger(name: str = "duty") -> logging.Logger:
    return logging.getLogger(name)
