from __future__ import annotations

import logging

from tenantkeys.core.config import Settings, get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    # Process entry points call this once; library modules only use getLogger(__name__).
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    logging.getLogger("tenantkeys").setLevel(level)
    # boto3 is chatty at INFO.
    logging.getLogger("botocore").setLevel(max(level, logging.WARNING))
