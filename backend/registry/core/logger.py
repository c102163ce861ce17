import logging
from pathlib import Path

from registry.core.config import settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(log_file: str | None = None) -> logging.Logger:
    """Attach handlers to the ``registry`` logger.

    Safe to call more than once: a later call only adds a file handler for a
    path that is not logged to yet, and re-applies the level.
    """
    level = getattr(logging, (settings.log_level or "INFO").upper(), logging.INFO)
    logger = logging.getLogger("registry")
    logger.setLevel(level)

    formatter = logging.Formatter(_FORMAT)
    has_stream = any(type(h) is logging.StreamHandler for h in logger.handlers)
    if not has_stream and not logging.getLogger().handlers:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    path = log_file or settings.log_file
    if path:
        log_path = Path(path).resolve()
        already_logged = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path) for h in logger.handlers
        )
        if not already_logged:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    return logger
