"""Logging setup for the texture pipeline.

Console output goes through ``tqdm.write`` so log lines do not tear the batch
progress bar. When the pipeline owns the root logger, a configured log file
records DEBUG while the console honours the requested level. Embedded in a
host application, the whole ``texture_pipeline`` hierarchy runs at the
requested level so host handlers never see records below it.
"""

import logging
import logging.handlers
import os
import threading

from tqdm import tqdm

logger = logging.getLogger("texture_pipeline")

_LOG_MAX_BYTES = 10 * 1024 * 1024
_LOG_BACKUP_COUNT = 3
_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [T%(thread)d]: %(message)s"
_NOISY_LOGGERS = ("PIL",)
_setup_lock = threading.Lock()


class TqdmLoggingHandler(logging.StreamHandler):
    """Stream handler that prints above an active tqdm bar."""

    def emit(self, record):
        try:
            tqdm.write(self.format(record), file=self.stream)
            self.flush()
        except Exception:
            self.handleError(record)


def _parse_level(level) -> int:
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        logger.warning("Invalid log level '%s', defaulting to INFO", level)
        return logging.INFO
    return numeric_level


def _file_handler(log_file: str) -> logging.Handler:
    os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=_LOG_MAX_BYTES, backupCount=_LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    return handler


def setup_logging(level: str = "INFO", log_file: str = None, force: bool = False):
    """Configure logging without clobbering host-app handlers by default."""
    with _setup_lock:
        _configure(_parse_level(level), log_file, force)


def _configure(console_level: int, log_file: str, force: bool):
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    pipeline_logger = logging.getLogger("texture_pipeline")
    root = logging.getLogger()
    if force or not root.handlers:
        pipeline_logger.setLevel(logging.DEBUG if log_file else console_level)
        console = TqdmLoggingHandler()
        console.setLevel(console_level)
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        handlers = [console]
        if log_file:
            handlers.append(_file_handler(log_file))
        logging.basicConfig(level=console_level, handlers=handlers, force=force)
        return

    # Embedded mode: the host owns the root handlers, only the pipeline
    # hierarchy is adjusted.
    pipeline_logger.setLevel(console_level)
    if not log_file:
        return
    target = os.path.abspath(log_file)
    existing = {
        getattr(h, "baseFilename", None)
        for h in pipeline_logger.handlers
        if isinstance(h, logging.FileHandler)
    }
    if target not in existing:
        logger.info("Adding file handler: %s", target)
        pipeline_logger.addHandler(_file_handler(log_file))
