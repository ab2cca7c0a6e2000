import logging
import os
import sys

from sitedigest.utils import configure_logging


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("SD_LOG_LEVEL", "INFO")
    monkeypatch.setenv("SD_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("sitedigest.worker")
        configure_logging("sitedigest.worker")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert any(handler.stream is sys.stdout for handler in stream_handlers)
        assert len([handler for handler in stream_handlers if handler.stream is sys.stdout]) == 1
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(
            str(log_file)
        )
    finally:
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_log_level_overrides(monkeypatch):
    monkeypatch.setenv("SD_LOG_LEVELS", "sitedigest.storage=debug, bad-entry")
    target = logging.getLogger("sitedigest.storage")
    original = target.level
    try:
        configure_logging("sitedigest.worker")
        assert target.level == logging.DEBUG
    finally:
        target.setLevel(original)
