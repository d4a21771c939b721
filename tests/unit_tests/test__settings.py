import pytest
from pydantic import ValidationError

from sentinel_deploy.settings import DEFAULT_PROVIDERS, Settings, get_settings


def test_defaults():
    settings = Settings()
    assert settings.log_analytics_sku == "PerGB2018"
    assert settings.data_retention_days == 90
    assert settings.resource_group_lock_type == "CanNotDelete"
    assert settings.enable_resource_group_lock is True
    assert settings.required_providers == DEFAULT_PROVIDERS
    assert settings.in_cloud_shell is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CLOUDSHELL", "true")
    monkeypatch.setenv("AZURE_DEFAULTS_LOCATION", "uksouth")
    monkeypatch.setenv("DATA_RETENTION_DAYS", "180")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings()
    assert settings.in_cloud_shell is True
    assert settings.default_location == "uksouth"
    assert settings.data_retention_days == 180
    assert settings.log_level == "DEBUG"


def test_sku_and_lock_type_are_normalised(monkeypatch):
    monkeypatch.setenv("LOG_ANALYTICS_SKU", "pergb2018")
    monkeypatch.setenv("RESOURCE_GROUP_LOCK_TYPE", "readonly")

    settings = Settings()
    assert settings.log_analytics_sku == "PerGB2018"
    assert settings.resource_group_lock_type == "ReadOnly"


def test_invalid_sku_is_rejected(monkeypatch):
    monkeypatch.setenv("LOG_ANALYTICS_SKU", "Premium")
    with pytest.raises(ValidationError, match="Invalid log_analytics_sku"):
        Settings()


def test_env_file_is_read(tmp_path):
    (tmp_path / ".env.sentinel").write_text("AZURE_BILLING_SCOPE=/providers/Microsoft.Billing/x\n")
    assert Settings().billing_scope == "/providers/Microsoft.Billing/x"


def test_default_tags_use_owner():
    tags = Settings().default_tags()
    assert tags["Owner"] == "tester"
    assert tags["Purpose"] == "Log Analytics and Sentinel"
    assert set(tags) == {"Environment", "Purpose", "CreatedBy", "Owner", "Department"}


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
