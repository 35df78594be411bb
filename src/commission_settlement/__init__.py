"""Commission settlement engine.

Importing the package sets up the shared ``log`` used by every module. Log
records go to a rotating file under ``.logs`` at the project root (or the
directory named by ``COMMISSION_SETTLEMENT_LOG_DIR``) and to stderr.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("COMMISSION_SETTLEMENT_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "commission_settlement.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _configure_logging() -> logging.Logger:
    """Attach the settlement file and console handlers once per process."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(f"Warning: cannot write settlement log '{LOG_FILE}': {exc}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # httpx logs every request at INFO; remote calls are logged by the pipeline.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger


log = _configure_logging()
log.debug("Settlement logger ready (version %s)", __version__)
