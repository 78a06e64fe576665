"""Unit tests for logging configuration."""

import logging

import pytest

from services.log_service import (
    SizeAndTimeRotatingHandler,
    configure_logging,
    parse_level,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestParseLevel:
    """Tests for parse_level."""

    @pytest.mark.parametrize(
        "name,level",
        [("debug", logging.DEBUG), ("INFO", logging.INFO), ("warning", logging.WARNING)],
    )
    def test_known(self, name, level):
        assert parse_level(name) == level

    def test_unknown_raises(self):
        with pytest.raises(ValueError, match="log level must be one of"):
            parse_level("trace")


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_file_and_console(self, tmp_path):
        logger = configure_logging(log_dir=str(tmp_path), log_file="test.log")

        kinds = [type(h) for h in logger.handlers]
        assert SizeAndTimeRotatingHandler in kinds
        assert logging.StreamHandler in kinds
        assert logger.level == logging.INFO

    def test_writes_to_file(self, tmp_path):
        configure_logging(log_dir=str(tmp_path), log_file="test.log", console=False)

        logging.getLogger("loopflow.test").info("hello from test")
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = (tmp_path / "test.log").read_text()
        assert "INFO - loopflow.test - hello from test" in content

    def test_no_file_logging(self):
        logger = configure_logging(log_dir=None)
        assert [type(h) for h in logger.handlers] == [logging.StreamHandler]

    def test_quiets_http_loggers(self):
        configure_logging(log_dir=None, level=logging.INFO)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_replaces_existing_handlers(self, tmp_path):
        configure_logging(log_dir=None)
        logger = configure_logging(log_dir=None)
        assert len(logger.handlers) == 1


class TestSizeAndTimeRotatingHandler:
    """Tests for size-based rollover."""

    def test_rolls_over_when_too_large(self, tmp_path):
        path = tmp_path / "big.log"
        handler = SizeAndTimeRotatingHandler(str(path), max_bytes=50, backup_count=2, when="midnight")
        handler.setFormatter(logging.Formatter("%(message)s"))
        try:
            for i in range(10):
                handler.emit(logging.makeLogRecord({"msg": f"line {i} " + "x" * 20}))
        finally:
            handler.close()

        rotated = [p for p in tmp_path.iterdir() if p.name != "big.log"]
        assert rotated
        assert len(rotated) <= 2
