import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .utils import user_data_dir

LOG_FILE = "cadetcore.log"
LOG_MAX_SIZE = 20 * 1024 * 1024  # 20 MB
LOG_BACKUP_COUNT = 5             # keep last 5 log files
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logger(level: int = logging.INFO, log_dir: Optional[Path] = None, console: bool = True) -> logging.Logger:
    """
    Configure the ``cadetcore`` logger for an application:
      - rotating file in the data directory (20 MB, 5 backups)
      - optional console handler
    Calling it again does not stack handlers.
    """
    logger = logging.getLogger("cadetcore")
    logger.setLevel(level)

    for h in list(logger.handlers):
        if getattr(h, "_cadetcore", False):
            logger.removeHandler(h)
            h.close()

    formatter = logging.Formatter(LOG_FORMAT)

    log_dir = Path(log_dir) if log_dir else user_data_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / LOG_FILE,
        maxBytes=LOG_MAX_SIZE,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler._cadetcore = True
    logger.addHandler(file_handler)

    if console:
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        stream._cadetcore = True
        logger.addHandler(stream)

    return logger
