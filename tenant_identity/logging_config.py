"""Process-wide logging setup: single-line ``key=value`` records on stdout."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger.

    Calling this more than once replaces the handler rather than stacking.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_tenant_identity", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._tenant_identity = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
