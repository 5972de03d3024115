from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_imgpro_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep ambient IMGPRO_* variables and a stray .env from leaking into settings."""
    for name in list(os.environ):
        if name.startswith("IMGPRO_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def static_resolver():
    """Build resolvers for ``OriginEgressGuard`` that answer from a mapping instead of DNS."""

    def _factory(mapping: dict[str, list[str]]):
        async def _resolve(host: str) -> list[str]:
            try:
                return mapping[host]
            except KeyError as exc:
                raise OSError(f"unknown host {host}") from exc

        return _resolve

    return _factory


@pytest.fixture
def public_resolver():
    """Every hostname resolves to a public documentation-range address."""

    async def _resolve(host: str) -> list[str]:
        return ["93.184.216.34"]

    return _resolve
