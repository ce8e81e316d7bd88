"""
Logging setup shared by every tournament desk service.
"""

import logging
from pathlib import Path
from typing import List, Optional

# Handlers installed by the last setup_logging() call
_installed: List[logging.Handler] = []


def setup_logging(
    program: str,
    level: str = "info",
    log_file: Optional[str] = None,
) -> None:
    """
    Set up the root Python logger.

    Always logs to stderr, optionally to a file as well. Calling it again
    replaces the handlers installed by the previous call.

    @param program: Name of the program, shown on every line
    @param level: Minimum level name (debug, info, warning, error, critical)
    @param log_file: If set, also append log records to this file
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = logging.Formatter(
        "%(asctime)s " + program + " [%(levelname)s] %(message)s"
    )
    root = logging.getLogger("")
    while _installed:
        old = _installed.pop()
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
        _installed.append(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Access logs are noisy at INFO for the polling endpoints
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
