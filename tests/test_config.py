import pytest
from pydantic import ValidationError

from utils.config import Settings


def test_defaults(monkeypatch):
    for name in ("LEASE_DURATION", "HEARTBEAT_INTERVAL", "MAX_CONCURRENT_UPLOADS", "CHECKPOINT_INTERVAL"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.LEASE_DURATION == 1800
    assert settings.LEASE_RETENTION == 172800
    assert settings.HEARTBEAT_INTERVAL == 120
    assert settings.VISIBILITY_BUFFER == 60
    assert settings.CHECKPOINT_INTERVAL == 300
    assert settings.MAX_CONCURRENT_UPLOADS == 5
    assert settings.DESTINATION_ROOT == "exports"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENT_UPLOADS", "2")
    monkeypatch.setenv("LEASE_BACKEND", "memory")

    settings = Settings(_env_file=None)

    assert settings.MAX_CONCURRENT_UPLOADS == 2
    assert settings.LEASE_BACKEND == "memory"


def test_heartbeat_must_be_shorter_than_visibility_timeout(monkeypatch):
    monkeypatch.setenv("HEARTBEAT_INTERVAL", "900")
    monkeypatch.setenv("QUEUE_VISIBILITY_TIMEOUT", "900")

    with pytest.raises(ValidationError, match="HEARTBEAT_INTERVAL"):
        Settings(_env_file=None)


def test_unknown_lease_backend_is_rejected(monkeypatch):
    monkeypatch.setenv("LEASE_BACKEND", "dynamo")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
