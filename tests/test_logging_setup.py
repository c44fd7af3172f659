import logging
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from action_service.logging_setup import close_logging, setup_logging


def test_setup_logging_writes_file(settings, tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    settings.LOG_FILE = str(tmp_path / "logs" / "actions.log")
    settings.LOG_LEVEL = "debug"
    try:
        setup_logging()
        assert root.level == logging.DEBUG
        logging.getLogger("action_service.test").info("hello from the worker")
        for h in root.handlers:
            h.flush()
        with open(settings.LOG_FILE) as f:
            text = f.read()
        assert "hello from the worker" in text
        assert "INFO action_service.test" in text
    finally:
        close_logging()
        root.handlers = saved_handlers
        root.setLevel(saved_level)
