"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from kestrel_swarm.core import settings as settings_module
from kestrel_swarm.core.settings import DelegationSettings, Settings


class TestDelegationSettings:
    def test_defaults(self):
        config = DelegationSettings()
        assert config.enabled is True
        assert config.allow_sub_agents is True
        assert config.max_depth == 3
        assert config.max_concurrent == 5
        assert config.token_budget_default == 50_000
        assert config.persist_transcripts is True

    @pytest.mark.parametrize(
        "field", ["max_depth", "max_concurrent", "default_timeout_ms", "token_budget_default"]
    )
    def test_rejects_non_positive_limits(self, field):
        with pytest.raises(ValidationError):
            DelegationSettings(**{field: 0})


class TestSettings:
    """KESTREL_SWARM_ prefixed environment variables."""

    def test_nested_values_from_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("KESTREL_SWARM_DELEGATION__MAX_DEPTH", "5")
        monkeypatch.setenv("KESTREL_SWARM_SWARM__DEFAULT_TOKEN_BUDGET", "1234")
        monkeypatch.setenv("KESTREL_SWARM_INFERENCE__MODEL", "local-model")
        monkeypatch.setenv("KESTREL_SWARM_STORAGE_DIR", str(tmp_path / "data"))

        loaded = Settings()

        assert loaded.delegation.max_depth == 5
        assert loaded.swarm.default_token_budget == 1234
        assert loaded.inference.model == "local-model"
        assert loaded.storage_dir_path() == tmp_path / "data"

    def test_api_key_is_secret(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("KESTREL_SWARM_INFERENCE__API_KEY", "sk-test")

        loaded = Settings()

        assert loaded.inference.api_key.get_secret_value() == "sk-test"
        assert "sk-test" not in repr(loaded)

    def test_reload_settings(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        original = settings_module.settings
        monkeypatch.setenv("KESTREL_SWARM_DELEGATION__MAX_CONCURRENT", "9")
        try:
            assert settings_module.reload_settings().delegation.max_concurrent == 9
            assert settings_module.get_settings().delegation.max_concurrent == 9
        finally:
            settings_module.settings = original
