import json
import pytest

from careboard.models.insight import ConfigurationError, ExponentialBackoff, RequestConfig
from careboard.services.config import (
    ConfigManager,
    ConfigSource,
    ConfigValidator,
    OrchestratorConfig,
    load_config,
)


class TestOrchestratorConfig:

    def test_defaults_are_valid(self):
        assert ConfigValidator().validate_config(OrchestratorConfig()) == []

    def test_from_dict_ignores_unknown_keys(self):
        config = OrchestratorConfig.from_dict({"max_retries": 4, "dashboard_theme": "dark"})
        assert config.max_retries == 4

    def test_request_config_uses_settings(self):
        config = OrchestratorConfig(default_ttl_millis=1000, max_retries=1,
                                    retry_base_delay_millis=50, retry_jitter=False)

        request_config = config.request_config()

        assert request_config.ttl_millis == 1000
        assert request_config.max_retries == 1
        assert isinstance(request_config.retry_backoff_millis, ExponentialBackoff)
        assert request_config.retry_backoff_millis(2) == 50

    def test_request_config_overrides(self):
        request_config = OrchestratorConfig().request_config(
            ttl_millis=0, source_entity_classes=["patients"])

        assert request_config.ttl_millis == 0
        assert request_config.source_entity_classes == ("patients",)

    @pytest.mark.parametrize("settings", [
        {"ttl_millis": -1},
        {"max_retries": -1},
        {"timeout_millis": 0},
    ])
    def test_invalid_request_config(self, settings):
        with pytest.raises(ConfigurationError):
            RequestConfig(**settings)

    def test_invalid_request_override(self):
        with pytest.raises(ConfigurationError):
            OrchestratorConfig().request_config(max_retries=-3)


class TestExponentialBackoff:

    def test_growth_and_cap(self):
        backoff = ExponentialBackoff(base_delay_millis=100, max_delay_millis=350, jitter=False)

        assert backoff(2) == 100
        assert backoff(3) == 200
        assert backoff(4) == 350

    def test_jitter_stays_within_ten_percent(self):
        backoff = ExponentialBackoff(base_delay_millis=1000)
        for _ in range(20):
            assert 900 <= backoff(2) <= 1100


class TestConfigValidator:

    @pytest.fixture
    def validator(self):
        return ConfigValidator()

    def test_rejects_out_of_range(self, validator):
        errors = validator.validate_config(OrchestratorConfig(max_retries=50))
        assert any("max_retries" in e for e in errors)

    def test_rejects_wrong_type(self, validator):
        errors = validator.validate_config(OrchestratorConfig(default_ttl_millis="60s"))
        assert any("default_ttl_millis" in e for e in errors)

    def test_rejects_bool_for_number(self, validator):
        errors = validator.validate_config(OrchestratorConfig(max_retries=True))
        assert errors

    def test_rejects_unknown_environment(self, validator):
        errors = validator.validate_config(OrchestratorConfig(environment="qa"))
        assert any("environment" in e for e in errors)

    def test_business_rules(self, validator):
        config = OrchestratorConfig(retry_base_delay_millis=1000, retry_max_delay_millis=10,
                                    environment="production", log_level="DEBUG")

        errors = validator.validate_config(config)

        assert len(errors) == 2


class TestConfigManager:

    def test_defaults_only(self):
        config = load_config(environ={})
        assert config == OrchestratorConfig()

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "careboard.yaml"
        path.write_text("default_ttl_millis: 30000\nstale_while_revalidate: false\n")

        config = load_config(str(path), environ={})

        assert config.default_ttl_millis == 30000
        assert config.stale_while_revalidate is False

    def test_json_file(self, tmp_path):
        path = tmp_path / "careboard.json"
        path.write_text(json.dumps({"max_retries": 5, "unknown": 1}))

        assert load_config(str(path), environ={}).max_retries == 5

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "careboard.yml"
        path.write_text("max_retries: 5\ntimeout_millis: 2000\n")
        environ = {
            "CAREBOARD_MAX_RETRIES": "1",
            "CAREBOARD_AUDIT_ENABLED": "false",
            "CAREBOARD_TIMEOUT_MILLIS": "2500.5",
        }

        manager = ConfigManager(str(path), environ=environ)
        config = manager.load()

        assert config.max_retries == 1
        assert config.audit_enabled is False
        assert config.timeout_millis == 2500.5
        summary = manager.get_config_summary()
        assert summary["max_retries"]["source"] == ConfigSource.ENVIRONMENT.value
        assert summary["default_ttl_millis"]["source"] == ConfigSource.DEFAULT.value

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"), environ={})
        assert config == OrchestratorConfig()

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("max_retries: [1, 2\n")

        with pytest.raises(ConfigurationError):
            load_config(str(path), environ={})

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2, 3]")

        with pytest.raises(ConfigurationError):
            load_config(str(path), environ={})

    def test_invalid_environment_value(self):
        with pytest.raises(ConfigurationError):
            load_config(environ={"CAREBOARD_MAX_RETRIES": "several"})

    def test_validation_failure(self):
        with pytest.raises(ConfigurationError):
            load_config(environ={"CAREBOARD_MAX_RETRIES": "99"})

    def test_runtime_update_notifies_watchers(self):
        manager = ConfigManager(environ={})
        manager.load()
        changes = []
        manager.register_watcher(lambda old, new: changes.append((old.max_retries, new.max_retries)))

        manager.update_config_value("max_retries", 4)

        assert manager.get_config().max_retries == 4
        assert changes == [(2, 4)]
        assert manager.get_config_summary()["max_retries"]["source"] == "runtime"

    def test_update_unknown_key(self):
        manager = ConfigManager(environ={})
        manager.load()
        with pytest.raises(ValueError):
            manager.update_config_value("dashboard_theme", "dark")

    def test_get_config_before_load(self):
        with pytest.raises(RuntimeError):
            ConfigManager(environ={}).get_config()
