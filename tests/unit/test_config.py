"""Tests for configuration loading."""

from stationflow.config import load_config
from stationflow.engine import build_engine
from stationflow.transports import get_transport
from stationflow.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  timer_backend: rabbitmq
  redis:
    host: testhost
    port: 1234
engine:
  http_timeout_ms: 2000
database_url: sqlite:///tmp/flow.db
log_level: DEBUG
"""
    )
    monkeypatch.setenv("STATIONFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("STATIONFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.timer_backend == "rabbitmq"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.engine.http_timeout_ms == 2000
    assert config.engine.activation_topic == "activity-execution"
    assert config.database_url == "sqlite:///tmp/flow.db"
    assert config.log_level == "DEBUG"


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("STATIONFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("DATABASE_URL", "postgresql://db/flow")
    monkeypatch.delenv("STATIONFLOW_DATABASE_URL", raising=False)
    monkeypatch.setenv("RABBIT_URL", "amqp://rabbit/")
    monkeypatch.setenv("KAFKA_BROKERS", "k1:9092,k2:9092")
    monkeypatch.setenv("STATIONFLOW_LOG_LEVEL", "WARNING")

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.database_url == "postgresql://db/flow"
    assert config.transport.rabbitmq.url == "amqp://rabbit/"
    assert config.transport.kafka.brokers == "k1:9092,k2:9092"
    assert config.log_level == "WARNING"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("STATIONFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("STATIONFLOW_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_build_engine_shares_transport_for_same_backend(tmp_path, monkeypatch):
    monkeypatch.setenv("STATIONFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("STATIONFLOW_TRANSPORT", raising=False)
    monkeypatch.delenv("STATIONFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    engine = build_engine()
    assert engine.timer_transport is engine.transport
    assert engine.work_queue.topic == "activity-execution"
    assert engine.timers.fired_topic == "timer.fired"
