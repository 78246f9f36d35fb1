from __future__ import annotations

import logging

from Utils.log import ColoredFormatter, LOG_FORMAT, setup_logging


def test_colored_formatter_leaves_record_untouched():
    record = logging.LogRecord("patrol", logging.WARNING, __file__, 1, "boom", None, None)
    text = ColoredFormatter(LOG_FORMAT).format(record)

    assert "\033[33mWARNING\033[0m" in text
    assert record.levelname == "WARNING"


def test_setup_logging_installs_file_and_console(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    log_file = tmp_path / "patrol.log"
    try:
        setup_logging(level="debug", log_file=str(log_file))
        logging.getLogger("patrol.test").debug("hello patrol")
        for handler in root.handlers:
            handler.flush()

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2
        assert "hello patrol" in log_file.read_text()
        assert logging.getLogger("discord.gateway").level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
