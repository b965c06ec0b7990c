"""
Tests for structured logging setup.
"""

import json
import logging

import pytest

from stakeflow_core.config import LoggingConfig
from stakeflow_core.logging_config import (
    STAKEFLOW_LOGGERS,
    _HumanFormatter,
    _JSONFormatter,
    set_level,
    setup_from_config,
    setup_logging,
)


def _record(msg="staked", **context):
    record = logging.LogRecord("stakeflow_engine", logging.INFO, __file__, 1, msg, (), None)
    for key, value in context.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestFormatters:
    def test_json_flattens_context(self):
        line = _JSONFormatter().format(_record(op="stake", pool_id=1, user_id="alice"))
        obj = json.loads(line)
        assert obj["msg"] == "staked"
        assert obj["logger"] == "stakeflow_engine"
        assert obj["op"] == "stake"
        assert obj["pool_id"] == 1
        assert "code" not in obj

    def test_human_appends_context(self):
        line = _HumanFormatter().format(_record(op="withdraw", amount=5))
        assert "stakeflow_engine: staked" in line
        assert "(op=withdraw amount=5)" in line

    def test_human_without_context(self):
        assert "(" not in _HumanFormatter().format(_record(msg="plain"))


class TestSetup:
    def test_json_console(self, restore_root):
        setup_logging(level="WARNING", fmt="json")
        assert restore_root.level == logging.WARNING
        assert isinstance(restore_root.handlers[0].formatter, _JSONFormatter)

    def test_log_file_is_json(self, restore_root, tmp_path):
        log_file = tmp_path / "logs" / "stakeflow.log"
        setup_from_config(LoggingConfig(level="INFO", format="human", file=str(log_file)))
        assert log_file.parent.is_dir()
        formatters = [type(h.formatter) for h in restore_root.handlers]
        assert formatters == [_HumanFormatter, _JSONFormatter]
        for h in restore_root.handlers:
            h.close()


class TestSetLevel:
    def test_changes_stakeflow_loggers(self):
        previous = {name: logging.getLogger(name).level for name in STAKEFLOW_LOGGERS}
        try:
            changed = set_level("debug")
            assert changed == list(STAKEFLOW_LOGGERS)
            assert logging.getLogger("stakeflow_engine").level == logging.DEBUG
        finally:
            for name, lvl in previous.items():
                logging.getLogger(name).setLevel(lvl)

    def test_unknown_level(self):
        with pytest.raises(ValueError):
            set_level("chatty")
