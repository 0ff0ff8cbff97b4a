"""Logging setup for applications embedding the engine."""

from __future__ import annotations

import logging
import sys

from portfolio_engine.config import EngineSettings, get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_HANDLER_NAME = "portfolio_engine.stdout"
_NOISY_LOGGERS = ("opentelemetry", "grpc")


def setup_logging(settings: EngineSettings | None = None, *, level: str | int | None = None) -> logging.Handler:
    """Install the stdout handler on the root logger; repeated calls only adjust the level."""

    settings = settings or get_settings()
    root_logger = logging.getLogger()
    handler = next((h for h in root_logger.handlers if h.get_name() == _HANDLER_NAME), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(handler)
    root_logger.setLevel(level if level is not None else settings.log_level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug("Logging configured: %s", settings.dict_for_logging())
    return handler


__all__ = ["setup_logging"]
