from __future__ import annotations

import logging
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: Optional[Union[str, int]] = None) -> None:
    """Console logging for the API process and the RQ worker."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level or logging.INFO, format=LOG_FORMAT)
    # httpx logs every request at INFO; parser calls are logged by the client.
    logging.getLogger("httpx").setLevel(logging.WARNING)
