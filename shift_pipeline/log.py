"""Logging for the API and the CLI."""

import logging
import sys
from pathlib import Path
from typing import Optional

from shift_pipeline.config import settings

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """Send ``shift_pipeline.*`` records to stdout and, if given, ``log_file``.

    Existing handlers are replaced, so the app lifespan and the CLI can both call it.
    """
    level_num = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    formatter = logging.Formatter(format_string or DEFAULT_FORMAT)

    logger = logging.getLogger("shift_pipeline")
    logger.setLevel(level_num)
    logger.handlers.clear()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path))
    for handler in handlers:
        handler.setLevel(level_num)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
