from __future__ import annotations

import logging

from pythonjsonlogger import jsonlogger

from pocketbook.settings import Settings

_logging_configured = False


def configure_logging(settings: Settings) -> None:
    """Install a single root handler; JSON lines unless LOG_JSON is off."""

    global _logging_configured
    if _logging_configured:
        return

    handler = logging.StreamHandler()
    if settings.log_json:
        handler.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    logging.basicConfig(level=settings.log_level, handlers=[handler], force=True)
    _logging_configured = True
