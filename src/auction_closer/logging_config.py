from __future__ import annotations

import logging

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=_LOG_FORMAT, force=True)
    # urllib3 logs every request at DEBUG
    logging.getLogger("urllib3").setLevel(max(numeric_level, logging.INFO))
    logging.getLogger("apscheduler").setLevel(max(numeric_level, logging.INFO))
