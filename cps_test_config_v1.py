"""
Chhaya Printing Solution (CPS) - Configuration Tests
Version: 1.0.0
"""

import pytest

from cps_config import DEFAULT_ALLOWED_ORIGINS, Settings, load_settings

ENV_VARS = [
    "ADMIN_CODE", "SESSION_SECRET", "DEVELOPER_UNLOCK_KEY", "LOCKOUT_POLICY",
    "LOGIN_MAX_ATTEMPTS", "LOCKOUT_MINUTES", "ATTEMPT_RECORD_TTL_MINUTES",
    "ATTEMPT_SWEEP_INTERVAL_SECONDS", "SESSION_TTL_HOURS", "APP_ENV",
    "CORS_ALLOWED_ORIGINS", "CURRENCY_SYMBOL", "LOG_LEVEL",
]

@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch

class TestLoadSettings:

    def test_defaults(self, clean_env):
        settings = load_settings()

        assert settings.admin_code == ""
        assert settings.lockout_policy == "timed"
        assert settings.max_attempts == 3
        assert settings.lockout_minutes == 30
        assert settings.session_cookie_name == "admin-token"
        assert settings.allowed_origins == DEFAULT_ALLOWED_ORIGINS
        assert settings.secure_cookies is False

    def test_overrides(self, clean_env):
        clean_env.setenv("ADMIN_CODE", "123456")
        clean_env.setenv("LOCKOUT_POLICY", " Permanent ")
        clean_env.setenv("LOGIN_MAX_ATTEMPTS", "5")
        clean_env.setenv("APP_ENV", "production")
        clean_env.setenv("CORS_ALLOWED_ORIGINS", "https://a.example, ,https://b.example")
        clean_env.setenv("LOG_LEVEL", "debug")

        settings = load_settings()

        assert settings.admin_code == "123456"
        assert settings.lockout_policy == "permanent"
        assert settings.max_attempts == 5
        assert settings.secure_cookies is True
        assert settings.allowed_origins == ["https://a.example", "https://b.example"]
        assert settings.log_level == "DEBUG"

    def test_blank_integer_uses_default(self, clean_env):
        clean_env.setenv("LOCKOUT_MINUTES", "  ")
        assert load_settings().lockout_minutes == 30

    def test_invalid_policy(self, clean_env):
        clean_env.setenv("LOCKOUT_POLICY", "forever")
        with pytest.raises(ValueError, match="LOCKOUT_POLICY"):
            load_settings()

    def test_invalid_integer(self, clean_env):
        clean_env.setenv("LOGIN_MAX_ATTEMPTS", "three")
        with pytest.raises(ValueError, match="LOGIN_MAX_ATTEMPTS"):
            load_settings()

    def test_settings_are_frozen(self):
        with pytest.raises(Exception):
            Settings().admin_code = "changed"

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
