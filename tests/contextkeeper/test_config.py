"""Tests for connector configuration loading and validation."""

from __future__ import annotations

import json
from datetime import timedelta

import pydantic
import pytest

from contextkeeper.connectors.config import (
    DISCORD,
    GITHUB,
    SLACK,
    AuthConfig,
    ConfigManager,
    ConnectorConfig,
    RateLimitConfig,
    SyncConfig,
    validate_config,
)
from contextkeeper.connectors.errors import ConfigError


_ENV_KEYS = (
    "GITHUB_CLIENT_ID",
    "GITHUB_CLIENT_SECRET",
    "GITHUB_TOKEN",
    "GITHUB_REPOSITORY",
    "GITHUB_CONNECTOR_ENABLED",
    "SLACK_BOT_TOKEN",
    "SLACK_CHANNELS",
    "SLACK_INCLUDE_DMS",
    "DISCORD_BOT_TOKEN",
    "DISCORD_CHANNEL_IDS",
    "DISCORD_GUILD_IDS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


# ── models ────────────────────────────────────────────────────────────────


class TestModels:
    def test_defaults(self):
        cfg = ConnectorConfig(platform="github")
        assert cfg.enabled
        assert cfg.rate_limit.burst_limit == 5
        assert cfg.sync_config.batch_size == 100
        assert cfg.sync_config.incremental_sync

    def test_frozen(self):
        cfg = ConnectorConfig(platform="github")
        with pytest.raises(pydantic.ValidationError):
            cfg.enabled = False

    @pytest.mark.parametrize(
        "field, value",
        [
            ("requests_per_minute", 0),
            ("burst_limit", -1),
            ("backoff_multiplier", 1.0),
        ],
    )
    def test_rate_limit_ranges(self, field, value):
        with pytest.raises(pydantic.ValidationError):
            RateLimitConfig(**{field: value})

    def test_non_positive_durations_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            SyncConfig(sync_interval=timedelta(0))

    def test_setting_prefers_auth_metadata(self):
        cfg = ConnectorConfig(
            platform="slack",
            auth_config=AuthConfig(metadata={"bot_token": "xoxb-auth"}),
            metadata={"bot_token": "xoxb-meta", "channels": ["C1"]},
        )
        assert cfg.setting("bot_token") == "xoxb-auth"
        assert cfg.setting("channels") == ["C1"]
        assert cfg.setting("missing", "dflt") == "dflt"

    def test_masked_hides_credentials(self, github_config):
        data = github_config().masked()
        assert data["auth_config"]["client_secret"] == "***"
        assert data["auth_config"]["metadata"]["access_token"] == "***"
        assert data["auth_config"]["metadata"]["owner"] == "acme"
        assert "ghp_test" not in json.dumps(data)


# ── validate_config ───────────────────────────────────────────────────────


class TestValidateConfig:
    def test_valid_configs(self, github_config, slack_config, discord_config):
        validate_config(github_config())
        validate_config(slack_config())
        validate_config(discord_config())

    def test_github_requires_client_credentials(self):
        cfg = ConnectorConfig(platform=GITHUB, auth_config=AuthConfig(scopes=["repo"]))
        with pytest.raises(ConfigError, match="client_id"):
            validate_config(cfg)

    def test_github_requires_scopes(self):
        cfg = ConnectorConfig(
            platform=GITHUB,
            auth_config=AuthConfig(client_id="a", client_secret="b", scopes=["repo"]),
        )
        with pytest.raises(ConfigError, match="read:user"):
            validate_config(cfg)

    def test_slack_requires_bot_token_prefix(self):
        cfg = ConnectorConfig(
            platform=SLACK, auth_config=AuthConfig(metadata={"bot_token": "xoxp-user"})
        )
        with pytest.raises(ConfigError, match="xoxb"):
            validate_config(cfg)

    def test_discord_requires_token(self):
        with pytest.raises(ConfigError, match="bot_token"):
            validate_config(ConnectorConfig(platform=DISCORD))

    def test_empty_platform(self):
        with pytest.raises(ConfigError):
            validate_config(ConnectorConfig(platform=""))


# ── ConfigManager ─────────────────────────────────────────────────────────


class TestConfigManager:
    def test_load_from_file(self, tmp_path, clean_env):
        path = tmp_path / "connectors.json"
        path.write_text(
            json.dumps(
                {
                    "connectors": {
                        "slack": {
                            "auth_config": {"metadata": {"bot_token": "xoxb-1"}},
                            "sync_config": {"batch_size": 25},
                            "metadata": {"channels": ["C9"]},
                        },
                        "discord": {"enabled": False},
                    }
                }
            )
        )
        manager = ConfigManager(path)
        configs = manager.load()

        assert set(configs) == {"slack", "discord"}
        assert configs["slack"].platform == "slack"
        assert configs["slack"].sync_config.batch_size == 25
        assert manager.get_enabled_platforms() == ["slack"]

    def test_file_takes_precedence_over_env(self, tmp_path, clean_env):
        clean_env.setenv("DISCORD_BOT_TOKEN", "from-env")
        path = tmp_path / "connectors.json"
        path.write_text(json.dumps({"connectors": {}}))
        assert ConfigManager(path).load() == {}

    def test_invalid_file_raises(self, tmp_path, clean_env):
        path = tmp_path / "connectors.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            ConfigManager(path).load()

    def test_invalid_entry_raises(self, tmp_path, clean_env):
        path = tmp_path / "connectors.json"
        path.write_text(
            json.dumps({"connectors": {"slack": {"sync_config": {"batch_size": 0}}}})
        )
        with pytest.raises(ConfigError, match="slack"):
            ConfigManager(path).load()

    def test_load_from_env(self, tmp_path, clean_env):
        clean_env.setenv("GITHUB_CLIENT_ID", "cid")
        clean_env.setenv("GITHUB_CLIENT_SECRET", "secret")
        clean_env.setenv("GITHUB_TOKEN", "ghp_x")
        clean_env.setenv("GITHUB_REPOSITORY", "acme/widgets")
        clean_env.setenv("SLACK_BOT_TOKEN", "xoxb-env")
        clean_env.setenv("SLACK_CHANNELS", "C1, C2")

        configs = ConfigManager(tmp_path / "absent.json").load()

        assert set(configs) == {GITHUB, SLACK}
        gh = configs[GITHUB]
        assert gh.auth_config.metadata["repository"] == "acme/widgets"
        assert gh.sync_config.sync_interval == timedelta(minutes=5)
        assert gh.sync_config.max_lookback == timedelta(days=30)
        validate_config(gh)
        assert configs[SLACK].metadata["channels"] == ["C1", "C2"]
        assert configs[SLACK].sync_config.batch_size == 50

    def test_env_enabled_flag(self, tmp_path, clean_env):
        clean_env.setenv("GITHUB_CLIENT_ID", "cid")
        clean_env.setenv("GITHUB_CLIENT_SECRET", "secret")
        clean_env.setenv("GITHUB_CONNECTOR_ENABLED", "false")
        manager = ConfigManager(tmp_path / "absent.json")
        manager.load()
        assert manager.get_config(GITHUB).enabled is False
        assert manager.get_enabled_platforms() == []

    def test_set_config_validates(self, tmp_path, discord_config):
        manager = ConfigManager(tmp_path / "c.json")
        with pytest.raises(ConfigError):
            manager.set_config(ConnectorConfig(platform=DISCORD))
        manager.set_config(discord_config())
        assert manager.get_config(DISCORD) is not None

    def test_save_round_trip(self, tmp_path, clean_env, slack_config):
        path = tmp_path / "out" / "connectors.json"
        manager = ConfigManager(path)
        manager.set_config(slack_config())
        manager.save()

        reloaded = ConfigManager(path)
        reloaded.load()
        assert reloaded.get_config(SLACK) == slack_config()
