import types

import pytest

from app import main


def _settings(**overrides):
    class Dummy:
        app_env = "prod"
        testing = False
        auth_secret_key = "a" * 32
        stripe_secret_key = "sk_live_x"
        stripe_webhook_secret = "whsec_x"
        stripe_webhook_allow_unverified = False

    settings_obj = Dummy()
    for key, value in overrides.items():
        setattr(settings_obj, key, value)
    return settings_obj


def _disable_pytest_shortcuts(monkeypatch):
    monkeypatch.delenv("PYTEST_CURRENT_TEST", raising=False)
    monkeypatch.setattr(main, "sys", types.SimpleNamespace(argv=["app.py"]))


def test_validate_prod_config_rejects_weak_secrets(monkeypatch, caplog):
    settings_obj = _settings(auth_secret_key="dev-auth-secret", stripe_webhook_secret=None)
    _disable_pytest_shortcuts(monkeypatch)

    with caplog.at_level("ERROR"):
        with pytest.raises(RuntimeError):
            main._validate_prod_config(settings_obj)

    details = [record.__dict__.get("extra", {}).get("detail") for record in caplog.records]
    errors = "\n".join(str(detail) for detail in details if detail)
    assert "AUTH_SECRET_KEY" in errors
    assert "STRIPE_WEBHOOK_SECRET" in errors


def test_validate_prod_config_accepts_strong_secrets(monkeypatch):
    _disable_pytest_shortcuts(monkeypatch)

    main._validate_prod_config(_settings())


def test_unverified_fallback_is_announced(monkeypatch, caplog):
    _disable_pytest_shortcuts(monkeypatch)

    with caplog.at_level("WARNING"):
        main._validate_prod_config(_settings(stripe_webhook_allow_unverified=True))

    assert "stripe_webhook_unverified_fallback_enabled" in [record.getMessage() for record in caplog.records]
