import pytest

from strikeflow.config import StrikeflowConfig, load_config
from strikeflow.errors import ConfigValidationError
from strikeflow.runtime import build_runtime


class TestProfiles:

    def test_defaults_validate(self):
        assert StrikeflowConfig().validate() == []

    @pytest.mark.parametrize("environment,cooldown,max_size", [
        ("development", 60, 10),
        ("staging", 120, 3),
        ("production", 180, 5),
    ])
    def test_profile_values(self, environment, cooldown, max_size):
        config = load_config(environment, env={})

        assert config.environment == environment
        assert config.signals.validation.cooldown_seconds == cooldown
        assert config.decision_engine.sizing.max_size == max_size

    def test_environment_from_env_var(self):
        config = load_config(env={'STRIKEFLOW_ENV': 'Production'})
        assert config.environment == 'production'
        assert config.decision_engine.risk.max_vix_for_entry == 40

    def test_unknown_environment(self):
        with pytest.raises(ConfigValidationError):
            load_config("qa", env={})


class TestEnvironmentOverrides:

    def test_overrides_applied(self):
        config = load_config("development", env={
            'COOLDOWN_SECONDS': '30',
            'MAX_VIX_FOR_ENTRY': '42.5',
            'STRIKEFLOW_DB_PATH': '/tmp/trades.db',
            'BASE_SIZE': '',
        })

        assert config.signals.validation.cooldown_seconds == 30
        assert config.decision_engine.risk.max_vix_for_entry == 42.5
        assert config.db_path == '/tmp/trades.db'
        assert config.decision_engine.sizing.base_size == 1.0

    def test_unparseable_override(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            load_config("development", env={'COOLDOWN_SECONDS': 'soon'})
        assert "COOLDOWN_SECONDS" in str(exc_info.value)

    def test_override_failing_validation(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            load_config("development", env={'KELLY_FRACTION': '1.5'})
        assert any("kelly_fraction" in e for e in exc_info.value.errors)


class TestValidation:

    def test_collects_every_error(self):
        config = StrikeflowConfig()
        config.decision_engine.exit.stop_loss_percent = 5.0
        config.signals.validation.market_hours_start = "16:00"
        config.signals.validation.blocked_windows = [("9:30",)]
        config.execution.mode = "live"
        config.pipeline.worker_claim_timeout_seconds = 0

        errors = config.validate()

        assert "stop_loss_percent must be negative" in errors
        assert "market_hours_start must be before market_hours_end" in errors
        assert any("blocked window" in e for e in errors)
        assert any("execution mode" in e for e in errors)
        assert "worker_claim_timeout_seconds must be positive" in errors

    def test_build_runtime_rejects_invalid_config(self):
        config = StrikeflowConfig()
        config.decision_engine.sizing.max_size = 0.5

        with pytest.raises(ConfigValidationError, match="max_size"):
            build_runtime(config)


class TestConfigHash:

    def test_hash_is_stable_and_sensitive(self):
        a = StrikeflowConfig()
        b = StrikeflowConfig()
        assert a.compute_hash() == b.compute_hash()

        b.decision_engine.exit.profit_target_percent = 40.0
        assert a.compute_hash() != b.compute_hash()

    def test_to_dict_includes_hash(self):
        config = StrikeflowConfig()
        data = config.to_dict()
        assert data['config_hash'] == config.compute_hash()
        assert data['signals']['validation']['cooldown_seconds'] == 300
