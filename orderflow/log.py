"""Logging setup for the orderflow process."""

from __future__ import annotations

import logging

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once at startup.

    Noisy client libraries are capped at WARNING so per-request lines
    from httpx don't drown the webhook audit trail.
    """
    logging.basicConfig(level=level.upper(), format=_FORMAT)
    for name in ("httpx", "httpcore", "apscheduler.executors.default"):
        logging.getLogger(name).setLevel(logging.WARNING)
