import json
import logging
from unittest.mock import MagicMock

import pytest

import lucid_bot_core.core.log_handler as lh
from lucid_bot_core.core.log_config import level_from_cfg_or_env


def _record(msg="hello", level=logging.INFO):
    return logging.LogRecord("lucid.test", level, __file__, 1, msg, None, None)


@pytest.fixture
def publisher():
    p = MagicMock()
    p.is_connected.return_value = True
    return p


def test_emit_publishes_json(publisher):
    h = lh.SessionLogHandler(publisher, "lucid/bots/b/logs")
    h.emit(_record("hello", logging.WARNING))

    topic, payload = publisher.publish.call_args.args
    assert topic == "lucid/bots/b/logs"
    data = json.loads(payload)
    assert data["level"] == "warning"
    assert data["logger"] == "lucid.test"
    assert "hello" in data["message"]


def test_emit_skips_when_disconnected(publisher):
    publisher.is_connected.return_value = False
    lh.SessionLogHandler(publisher, "t").emit(_record())
    publisher.publish.assert_not_called()


def test_rate_limit_drops_and_reports(publisher, monkeypatch):
    monkeypatch.setattr(lh, "MAX_LOGS_PER_WINDOW", 2)
    monkeypatch.setattr(lh, "TIME_WINDOW_S", 60.0)
    h = lh.SessionLogHandler(publisher, "t")

    for _ in range(5):
        h.emit(_record())

    assert publisher.publish.call_count == 2
    h._log_timestamps.clear()
    h.emit(_record())
    assert json.loads(publisher.publish.call_args.args[1])["dropped"] == 3


@pytest.mark.parametrize("cfg,env,expected", [
    ("DEBUG", None, logging.DEBUG),
    (None, "warning", logging.WARNING),
    (None, None, logging.INFO),
    ("nonsense", None, logging.INFO),
])
def test_level_resolution(monkeypatch, cfg, env, expected):
    if env is None:
        monkeypatch.delenv("LUCID_BOT_LOG_LEVEL", raising=False)
    else:
        monkeypatch.setenv("LUCID_BOT_LOG_LEVEL", env)
    assert level_from_cfg_or_env(cfg) == expected
