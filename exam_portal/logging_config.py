"""Logging setup shared by the app and the CLI entrypoint."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    if any(getattr(h, "_exam_portal", False) for h in root.handlers):
        root.setLevel(level.upper())
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._exam_portal = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level.upper())
