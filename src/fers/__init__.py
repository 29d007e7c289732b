"""Fashion E-Retail System: catalog, cart and order lifecycle over a workbook.

Importing the package sets up the shared ``fers`` logger. Records go to
``.logs/fers.log`` at the project root, rotated at about 1 MB with five
backups, and are echoed to stderr. Every module logs through the ``log``
object exported here.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "fers.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _shop_file_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    """Return the rotating shop log handler, or ``None`` if the file is unwritable."""

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: shop log disabled, cannot write '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    # re-imports and test reloads must not stack handlers
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = [_shop_file_handler(formatter), logging.StreamHandler(sys.stderr)]
    for handler in handlers:
        if handler is None:
            continue
        handler.setLevel(logging.INFO)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


log = _configure_logging()
log.info("FERS shop logging ready (file: %s)", LOG_FILE)
