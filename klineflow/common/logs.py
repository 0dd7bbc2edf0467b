import logging
import sys
from logging import handlers
from typing import Optional

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s %(message)s"

_configured = False


def setup_logging(level: str = "info", log_file: Optional[str] = None, max_bytes: int = 10_000_000, backups: int = 5):
    """
    Configure the root logger once per process.

    Console output always goes to stderr; ``log_file`` adds a size-rotated file.
    Calling again only adjusts the level.
    """
    global _configured
    root = logging.getLogger()
    root.setLevel(LOG_LEVELS.get(str(level).lower(), logging.INFO))
    if _configured:
        return root

    fmt = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(fmt)
    root.addHandler(console)

    if log_file:
        fh = handlers.RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
        fh.setFormatter(fmt)
        root.addHandler(fh)

    # urllib3 is chatty at debug level
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.INFO)
    _configured = True
    return root
