from __future__ import annotations

from pathlib import Path

import pytest

from imgpro.common.settings import DEFAULT_USAGE_DATABASE_URL, EdgeSettings, parse_file_size


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("50MB", 50 * 1024 * 1024),
        ("100kb", 100 * 1024),
        ("1.5 GB", int(1.5 * 1024 ** 3)),
        ("512", 512),
        ("2B", 2),
    ],
)
def test_parse_file_size(value: str, expected: int) -> None:
    assert parse_file_size(value) == expected


@pytest.mark.parametrize("value", ["", "ten MB", "5PB", "-1MB"])
def test_parse_file_size_rejects_garbage(value: str) -> None:
    with pytest.raises(ValueError):
        parse_file_size(value)


def test_defaults() -> None:
    settings = EdgeSettings()

    assert settings.allowed_origins == "*"
    assert settings.max_file_size == 50 * 1024 * 1024
    assert settings.fetch_timeout_seconds == 30.0
    assert settings.billing_database_url is None
    assert settings.site_ids == {}
    assert "169.254.169.254" in settings.metadata_endpoint_denylist


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("IMGPRO_MAX_FILE_SIZE", "10MB")
    monkeypatch.setenv("IMGPRO_ALLOWED_ORIGINS", "*.example.com,cdn.test")
    monkeypatch.setenv("IMGPRO_SITE_IDS", "Example.com=1, photos.test=22,broken")
    monkeypatch.setenv("IMGPRO_METADATA_DENYLIST", "169.254.169.254, metadata.internal")
    monkeypatch.setenv("IMGPRO_USAGE_DATABASE_URL", str(tmp_path / "usage.db"))
    monkeypatch.setenv("IMGPRO_BILLING_DATABASE_URL", "")
    monkeypatch.setenv("IMGPRO_METRICS_TOKEN", "s3cret")

    settings = EdgeSettings()

    assert settings.max_file_size == 10 * 1024 * 1024
    assert settings.allowed_origins == "*.example.com,cdn.test"
    assert settings.site_ids == {"example.com": 1, "photos.test": 22}
    assert settings.metadata_endpoint_denylist == ["169.254.169.254", "metadata.internal"]
    assert settings.usage_database_url == f"sqlite+aiosqlite:///{(tmp_path / 'usage.db').resolve().as_posix()}"
    assert settings.billing_database_url is None
    assert settings.metrics_token.get_secret_value() == "s3cret"


def test_database_urls_with_scheme_are_kept() -> None:
    settings = EdgeSettings(billing_database_url="postgresql+asyncpg://user@db/billing")

    assert settings.billing_database_url == "postgresql+asyncpg://user@db/billing"


def test_log_format_is_validated() -> None:
    assert EdgeSettings(log_format=" Console ").log_format == "console"
    with pytest.raises(ValueError):
        EdgeSettings(log_format="xml")


def test_empty_usage_database_url_uses_default(monkeypatch) -> None:
    monkeypatch.setenv("IMGPRO_USAGE_DATABASE_URL", "  ")

    settings = EdgeSettings()

    assert settings.usage_database_url == DEFAULT_USAGE_DATABASE_URL
    assert settings.billing_database_url is None
