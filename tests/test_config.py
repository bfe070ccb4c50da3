"""Tests for Settings defaults and helpers."""

from __future__ import annotations

from src.dealflow.config import Environment, Settings


def test_defaults():
    settings = Settings()

    assert settings.ENVIRONMENT == Environment.development
    assert settings.BULK_MAX_CONCURRENCY == 8
    assert settings.BULK_DEFAULT_DECLINE_REASON == "Not a fit"
    assert settings.DEAL_SERVICE_URL == ""
    assert settings.DEAL_SERVICE_TIMEOUT == 30.0


def test_cors_wildcard():
    assert Settings(CORS_ALLOWED_ORIGINS="*").get_cors_origins() == ["*"]


def test_cors_list_is_split_and_trimmed():
    settings = Settings(CORS_ALLOWED_ORIGINS="https://a.test, https://b.test ,")
    assert settings.get_cors_origins() == ["https://a.test", "https://b.test"]


def test_env_override(monkeypatch):
    monkeypatch.setenv("BULK_MAX_CONCURRENCY", "2")
    monkeypatch.setenv("ENVIRONMENT", "production")

    settings = Settings()

    assert settings.BULK_MAX_CONCURRENCY == 2
    assert settings.ENVIRONMENT == Environment.production
