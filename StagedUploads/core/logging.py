from __future__ import annotations

import logging
from typing import Optional

from .config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    resolved = (level or get_settings().LOG_LEVEL).upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    logging.getLogger("StagedUploads").setLevel(resolved)
