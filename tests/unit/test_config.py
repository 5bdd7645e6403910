"""Unit tests for environment configuration."""

import logging
from pathlib import Path

import pytest

from nutledger.config import DEFAULT_STATE_DIR, Settings
from nutledger.relay import DEFAULT_RELAYS

ENV_VARS = [
    "NSEC",
    "CASHU_MINTS",
    "NOSTR_RELAYS",
    "NUTLEDGER_STATE_DIR",
    "NUTLEDGER_POLL_INTERVAL",
    "NUTLEDGER_QUERY_LIMIT",
    "NUTLEDGER_LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # load_dotenv writes to os.environ; registering each name first lets
    # monkeypatch remove whatever a .env file put there
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestSettings:
    def test_defaults(self, clean_env, tmp_path):
        settings = Settings.from_env(tmp_path / "missing.env")

        assert settings.nsec is None
        assert settings.mint_urls == []
        assert settings.relays == DEFAULT_RELAYS
        assert settings.state_dir == DEFAULT_STATE_DIR
        assert settings.log_level_number == logging.WARNING

    def test_values_from_environment(self, clean_env):
        clean_env.setenv("CASHU_MINTS", "https://a.example.com/, https://b.example.com,,")
        clean_env.setenv("NOSTR_RELAYS", "wss://r1.example.com,wss://r1.example.com")
        clean_env.setenv("NUTLEDGER_POLL_INTERVAL", "0.5")
        clean_env.setenv("NUTLEDGER_QUERY_LIMIT", "250")
        clean_env.setenv("NUTLEDGER_LOG_LEVEL", "debug")
        clean_env.setenv("NUTLEDGER_STATE_DIR", "/tmp/nutledger-test")

        settings = Settings.from_env()

        assert settings.mint_urls == ["https://a.example.com", "https://b.example.com"]
        assert settings.relays == ["wss://r1.example.com"]
        assert settings.poll_interval == 0.5
        assert settings.query_limit == 250
        assert settings.log_level_number == logging.DEBUG
        assert settings.state_dir == Path("/tmp/nutledger-test")

    def test_dotenv_file_is_loaded(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("NSEC=abc123\nCASHU_MINTS=https://mint.example.com\n")

        settings = Settings.from_env(env_file)

        assert settings.nsec == "abc123"
        assert settings.mint_urls == ["https://mint.example.com"]

    def test_environment_wins_over_dotenv(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("NUTLEDGER_QUERY_LIMIT=10\n")
        clean_env.setenv("NUTLEDGER_QUERY_LIMIT", "20")

        assert Settings.from_env().query_limit == 20

    @pytest.mark.parametrize(
        "name,value",
        [
            ("NUTLEDGER_POLL_INTERVAL", "soon"),
            ("NUTLEDGER_POLL_INTERVAL", "-1"),
            ("NUTLEDGER_QUERY_LIMIT", "1.5"),
            ("NUTLEDGER_QUERY_LIMIT", "0"),
        ],
    )
    def test_invalid_numbers_name_the_variable(self, clean_env, name, value):
        clean_env.setenv(name, value)

        with pytest.raises(ValueError, match=name):
            Settings.from_env()

    def test_unknown_log_level(self):
        with pytest.raises(ValueError):
            Settings(log_level="LOUD").log_level_number
