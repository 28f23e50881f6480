from __future__ import annotations

import pytest

from config import Config


def test_tenant_url_overrides_are_parsed(monkeypatch):
    monkeypatch.setenv("TENANT_DATABASE_URLS", '{" Acme ": "postgresql://db/acme", "": "x"}')
    cfg = Config()
    assert cfg.TENANT_DATABASE_URLS == {"acme": "postgresql://db/acme"}


def test_tenant_url_overrides_must_be_an_object(monkeypatch):
    monkeypatch.setenv("TENANT_DATABASE_URLS", '["acme"]')
    with pytest.raises(RuntimeError):
        Config()


@pytest.mark.parametrize(
    "env",
    [
        {"TENANT_DATABASE_URL_TEMPLATE": "sqlite:///./data/one.db"},
        {"ENV": "production", "AUTH_ALLOW_TEST_TOKENS": "1", "GOOGLE_CLIENT_ID": "cid"},
        {"ENV": "production", "GOOGLE_CLIENT_ID": ""},
        {"NOTIFIER_BACKEND": "carrier-pigeon"},
        {"NOTIFIER_BACKEND": "webhook", "NOTIFY_WEBHOOK_URL": ""},
    ],
)
def test_validate_rejects_unsafe_settings(monkeypatch, env):
    monkeypatch.delenv("TENANT_DATABASE_URLS", raising=False)
    monkeypatch.delenv("AUTH_ALLOW_TEST_TOKENS", raising=False)
    for k, v in env.items():
        monkeypatch.setenv(k, v)
    with pytest.raises(RuntimeError):
        Config().validate()
