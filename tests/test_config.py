import pytest

import config
from auth import AdminNotConfigured, verify_admin_secret


def test_env_treats_blank_as_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOME_SETTING", "   ")
    assert config.env("SOME_SETTING", "fallback") == "fallback"


def test_bool_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLAG", "Yes")
    assert config.bool_env("FLAG")
    monkeypatch.setenv("FLAG", "off")
    assert not config.bool_env("FLAG")


def test_parse_origins() -> None:
    assert config.parse_origins("https://a.com/, ,https://b.com") == ["https://a.com", "https://b.com"]
    assert config.parse_origins(None) == []


def test_validate_env_collects_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.delenv("STRICT_ENV_VALIDATION", raising=False)
    monkeypatch.setenv("ADMIN_SECRET", "short")
    monkeypatch.setenv("PRO_WEEKLY_LIMIT", "lots")
    monkeypatch.setenv("PLAN_CATALOG", "[1, 2]")

    with pytest.raises(RuntimeError) as exc:
        config.validate_env()

    message = str(exc.value)
    assert "ADMIN_SECRET must be at least 16 characters." in message
    assert "PRO_WEEKLY_LIMIT must be an integer." in message
    assert "PLAN_CATALOG is invalid" in message


def test_validate_env_only_warns_in_development(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.delenv("STRICT_ENV_VALIDATION", raising=False)
    monkeypatch.delenv("ADMIN_SECRET", raising=False)
    monkeypatch.delenv("PLAN_CATALOG", raising=False)

    config.validate_env()


def test_admin_secret_comparison() -> None:
    assert verify_admin_secret("s3cret-value", "s3cret-value")
    assert not verify_admin_secret("wrong", "s3cret-value")
    assert not verify_admin_secret(None, "s3cret-value")
    with pytest.raises(AdminNotConfigured):
        verify_admin_secret("anything", None)


def test_storage_timeout_must_fit_the_decision_budget(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENTITLEMENT_TIMEOUT_SECONDS", "3")
    monkeypatch.setenv("STORAGE_TIMEOUT_SECONDS", "5")

    with pytest.raises(RuntimeError) as exc:
        config.validate_env()

    assert "STORAGE_TIMEOUT_SECONDS must not exceed ENTITLEMENT_TIMEOUT_SECONDS." in str(exc.value)
