"""Diagnostic logging for fillmem.

Records go to a daily-rotated file only. The terminal is in raw mode while
the console runs, so a stream handler would write underneath the editor.
"""

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

LOG_FORMAT = '%(asctime)s.%(msecs)03d - %(levelname)s - %(threadName)s - %(filename)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(log_dir: Path, level: str = "INFO") -> Path:
    """Attach a rotating file handler to the root logger.

    Args:
        log_dir: directory for fillmem.log, created if missing
        level: logging level name

    Returns:
        Path of the active log file
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / "fillmem.log"

    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise RuntimeError(f"unknown log level {level!r}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric)
    root_logger.handlers.clear()

    handler = TimedRotatingFileHandler(
        filename=path,
        when='midnight',
        interval=1,
        backupCount=7,
        encoding='utf-8'
    )
    handler.setLevel(numeric)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(handler)

    logging.getLogger(__name__).info("logging to %s", path)
    return path
