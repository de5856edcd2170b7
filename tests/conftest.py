"""
Pytest configuration and shared fixtures
"""
import os
import sys
from types import SimpleNamespace

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from emqx_pg_bridge.config import MQTTConfig, PostgresConfig  # noqa: E402


ENV_KEYS = [
    'MQTT_BROKER', 'MQTT_CLIENT_ID', 'MQTT_USERNAME', 'MQTT_PASSWORD', 'MQTT_TOPIC',
    'MQTT_QOS', 'MQTT_SSL_ENABLED', 'MQTT_SSL_INSECURE', 'MQTT_KEEPALIVE',
    'MQTT_RECONNECT_INTERVAL', 'MQTT_CONNECT_TIMEOUT',
    'PG_HOST', 'PG_PORT', 'PG_DATABASE', 'PG_USERNAME', 'PG_PASSWORD', 'PG_SSLMODE',
    'PG_TABLE', 'PG_POOL_MIN', 'PG_POOL_MAX', 'BRIDGE_LOG_LEVEL',
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every bridge variable; anything set during the test is undone afterwards."""
    for key in ENV_KEYS:
        monkeypatch.setenv(key, 'placeholder')
        monkeypatch.delenv(key)
    return monkeypatch


@pytest.fixture
def mock_env(clean_env):
    """Minimal valid environment"""
    env_vars = {
        'MQTT_BROKER': 'tcp://broker.test.local:1883',
        'MQTT_TOPIC': 'devices/+/report',
        'PG_HOST': 'db.test.local',
        'PG_DATABASE': 'telemetry',
        'PG_TABLE': 'device_data',
    }
    for key, value in env_vars.items():
        clean_env.setenv(key, value)
    return env_vars


@pytest.fixture
def mqtt_cfg():
    return MQTTConfig(
        broker='tcp://localhost:1883',
        host='localhost',
        port=1883,
        client_id='bridge-test',
        username='bridge',
        password='pw',
        topic='devices/+/report',
        qos=1,
        ssl_enabled=False,
        reconnect_interval_s=5.0,
        connect_timeout_s=1.0,
    )


@pytest.fixture
def pg_cfg():
    return PostgresConfig(
        host='localhost',
        port=5432,
        database='telemetry',
        username='bridge',
        password='pw',
        sslmode='disable',
        table='device_data',
        pool_min=1,
        pool_max=4,
    )


@pytest.fixture
def sample_payload():
    """Scenario payload from the device firmware"""
    return (
        b'{"imei":"123","lat":1.5,"lng":2.5,"gps_ts":1000,"uptime":50,'
        b'"csq":20,"vbat":380,"up_vbat":390,"ip":"10.0.0.1"}'
    )


class FakeReasonCode:
    """Stand-in for paho's ReasonCode"""

    def __init__(self, value: int, name: str = ''):
        self.value = value
        self.is_failure = value >= 0x80
        self._name = name or str(value)

    def __str__(self):
        return self._name


@pytest.fixture
def reason_code():
    return FakeReasonCode


@pytest.fixture
def connack_flags():
    return SimpleNamespace(session_present=False)
