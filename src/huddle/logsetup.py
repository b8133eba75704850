from __future__ import annotations

import logging
from typing import Optional

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(*, debug: bool = False, level: Optional[int] = None) -> None:
    """Configure root logging for the process.

    ``level`` overrides ``debug``. Safe to call more than once: when handlers
    already exist only their levels are adjusted.
    """

    base_level = level if level is not None else (logging.DEBUG if debug else logging.INFO)

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(base_level)
        for handler in root.handlers:
            handler.setLevel(base_level)
        return

    logging.basicConfig(level=base_level, format=_FORMAT, datefmt=_DATEFMT)
    # aiohttp access logs are noisy at DEBUG
    logging.getLogger("aiohttp.access").setLevel(max(base_level, logging.INFO))
