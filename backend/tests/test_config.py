import pytest

from config import ConfigError, load_settings

BASE = {"MONGO_URL": "mongodb://localhost:27017", "DB_NAME": "listeners"}


class TestLoadSettings:

    def test_defaults(self):
        settings = load_settings(dict(BASE))
        assert settings.db_name == "listeners"
        assert settings.onboarding_complete_status == "active"
        assert settings.workflow_timeout == 8.0
        assert settings.phone_country_code == "+91"
        assert settings.enable_triggers is True
        assert settings.jwt_algorithm == "HS256"

    def test_overrides(self):
        settings = load_settings({
            **BASE,
            "ONBOARDING_COMPLETE_STATUS": "Pending",
            "WORKFLOW_TIMEOUT_SECONDS": "2.5",
            "ENABLE_TRIGGERS": "false",
            "PRICING_POLICY_FILE": "/etc/policy.json",
        })
        assert settings.onboarding_complete_status == "pending"
        assert settings.workflow_timeout == 2.5
        assert settings.enable_triggers is False
        assert settings.pricing_policy_file == "/etc/policy.json"

    @pytest.mark.parametrize("missing", ["MONGO_URL", "DB_NAME"])
    def test_required(self, missing):
        env = dict(BASE)
        del env[missing]
        with pytest.raises(ConfigError) as exc:
            load_settings(env)
        assert missing in str(exc.value)

    @pytest.mark.parametrize("override", [
        {"ONBOARDING_COMPLETE_STATUS": "suspended"},
        {"WORKFLOW_TIMEOUT_SECONDS": "soon"},
        {"WORKFLOW_TIMEOUT_SECONDS": "0"},
        {"JWT_EXPIRY_DAYS": "thirty"},
    ])
    def test_invalid(self, override):
        with pytest.raises(ConfigError):
            load_settings({**BASE, **override})
