from __future__ import annotations

import logging
import os

LOG_LEVEL = os.getenv("ITDESK_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)
    # httpx logs every request line at INFO, including URLs with query strings.
    logging.getLogger("httpx").setLevel(logging.WARNING)
