import sys
import os
from typing import Optional
from loguru import logger

CONSOLE_FORMAT = ("<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
                  "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>")

# one line per profiled command: database, shell rendering and elapsed time
PROFILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {extra[database]} | {message}"


def _is_profile(record) -> bool:
    return record["extra"].get("profile", False)


def setup_logging(debug_mode: bool = False, log_dir: Optional[str] = None, profile_log: Optional[str] = None):
    """
    Configures Loguru logger for mongodoc.

    Profiling records (``DatabaseSettings.profiling``) go to ``profile_log``
    when it is given and are kept off the console unless ``debug_mode`` is on.
    """
    logger.remove()

    level = "DEBUG" if debug_mode else "INFO"
    console_filter = None if debug_mode or not profile_log else (lambda record: not _is_profile(record))
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, filter=console_filter)

    if log_dir:
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)
        logger.add(os.path.join(log_dir, "mongodoc_{time}.log"), rotation="10 MB", retention="1 week", level="DEBUG")

    if profile_log:
        dirname = os.path.dirname(profile_log)
        if dirname:
            os.makedirs(dirname, exist_ok=True)
        logger.add(profile_log, level="DEBUG", format=PROFILE_FORMAT, filter=_is_profile)

    logger.info("Logging initialized.")
