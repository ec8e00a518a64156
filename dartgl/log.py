from __future__ import annotations

import logging

from .errors import check_int

# 0 silent, 1 warnings (start/end), 2 progress, 3 results summary, 4-5 full report.
_LEVELS = {
    0: logging.CRITICAL + 10,
    1: logging.WARNING,
    2: logging.INFO,
    3: logging.DEBUG,
    4: logging.DEBUG,
    5: logging.DEBUG,
}

_FORMAT = "%(levelname)s %(name)s: %(message)s"


def set_verbosity(verbose: int = 2) -> logging.Logger:
    """Map the 0-5 verbosity scale onto the package logger.

    Verbosity only controls diagnostics; no computed statistic depends on it.
    """
    verbose = check_int("verbose", verbose, 0, 5)
    root = logging.getLogger("dartgl")
    root.setLevel(_LEVELS[verbose])
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)
    return root
