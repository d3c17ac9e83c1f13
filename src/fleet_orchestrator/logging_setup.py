"""Process-wide logging configuration."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once; the level is updated and no duplicate
    handler is added.
    """
    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(h, "_fleet_orchestrator", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._fleet_orchestrator = True
    root.addHandler(handler)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
