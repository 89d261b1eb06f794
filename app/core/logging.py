"""Single place where the root logger is configured."""

import logging
from typing import Optional

from app.config import settings

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    level_name = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=_FORMAT)
    # uvicorn access lines duplicate the relay's own connection logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
