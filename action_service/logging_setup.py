import logging
import os
from logging.handlers import TimedRotatingFileHandler

from .config import get_settings

logger = logging.getLogger("action_service")

_file_handler = None


def setup_logging():
    global _file_handler
    cfg = get_settings()
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO))
    formatter = logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s')
    if _file_handler:
        _file_handler.close()
        _file_handler = None
    handlers = []
    if cfg.LOG_FILE:
        os.makedirs(os.path.dirname(os.path.abspath(cfg.LOG_FILE)), exist_ok=True)
        # Daily rotation, keep 14 days
        _file_handler = TimedRotatingFileHandler(cfg.LOG_FILE, when="midnight", interval=1, backupCount=14)
        _file_handler.setFormatter(formatter)
        handlers.append(_file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)
    root_logger.handlers = handlers
    root_logger.info("[BOOT] Logging initialized (file=%s)", cfg.LOG_FILE or "-")


def close_logging():
    global _file_handler
    if _file_handler:
        _file_handler.close()
        _file_handler = None
