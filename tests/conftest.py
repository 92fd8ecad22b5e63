"""
Pytest configuration and shared fixtures
"""
import json
import os
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from lucid_bot_core.config import parse_config  # noqa: E402


@pytest.fixture
def config_data():
    """Valid config document with two workspaces (roles [A,B] and [C])"""
    return {
        'bot_id': 'test_bot',
        'token': 'secret-token',
        'prefix': '!',
        'broker': {'host': 'test.mqtt.local', 'port': 1883},
        'workspaces': {
            'main': {'workspace_id': 'ws1', 'role_ids': ['A', 'B']},
            'dev': {'workspace_id': 'ws2', 'role_ids': ['C']},
        },
    }


@pytest.fixture
def bot_config(config_data, monkeypatch):
    monkeypatch.delenv('LUCID_BOT_TOKEN', raising=False)
    return parse_config(config_data)


@pytest.fixture
def config_file(tmp_path, config_data):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps(config_data), encoding='utf-8')
    return path


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    loop_start() delivers a successful CONNACK unless the test changes connack.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True
    fake.publish.return_value = SimpleNamespace(rc=0)
    fake.connack = SimpleNamespace(is_failure=False)
    fake.session = None

    def _loop_start():
        if fake.session is not None and fake.connack is not None:
            fake.session._on_connect(fake, None, {}, fake.connack, None)

    fake.loop_start.side_effect = _loop_start

    def _ctor(*args, **kwargs):
        return fake

    monkeypatch.setattr('paho.mqtt.client.Client', _ctor)
    return fake
