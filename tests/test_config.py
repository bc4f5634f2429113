import pytest

from keygate_license_server.config import ConfigError, load_config
from keygate_license_server.db import get_database_uri, get_engine_options


def test_missing_secret(monkeypatch):
    monkeypatch.delenv("HMAC_SECRET", raising=False)
    with pytest.raises(ConfigError):
        load_config()


def test_env_is_read(monkeypatch):
    monkeypatch.setenv("HMAC_SECRET", "s3cret")
    monkeypatch.setenv("DATABASE_URL", "postgres://user:pw@db:5432/keygate")
    monkeypatch.setenv("TRUSTED_LICENSE_KEYS", "AAAAA-AAAAA-AAAAA-AAAAA-AAAAA, ,BBBBB-BBBBB-BBBBB-BBBBB-BBBBB")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = load_config()

    assert config.hmac_secret == "s3cret"
    assert config.database_uri == "postgresql://user:pw@db:5432/keygate"
    assert config.trusted_license_keys == ["AAAAA-AAAAA-AAAAA-AAAAA-AAAAA", "BBBBB-BBBBB-BBBBB-BBBBB-BBBBB"]
    assert config.trusted_team_ids == []
    assert config.log_level == "DEBUG"


def test_sqlite_fallback(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert get_database_uri().startswith("sqlite:///")
    assert get_engine_options("sqlite://") == {}
    assert get_engine_options("postgresql://db/keygate")["pool_pre_ping"] is True
