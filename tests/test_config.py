"""Tests for environment settings and per-adapter configuration."""

from __future__ import annotations

import dataclasses

import pytest

from llmbridge.config import AdapterConfig, Settings


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("LLMBRIDGE_REQUEST_TIMEOUT", raising=False)
        settings = Settings(_env_file=None)
        assert settings.request_timeout == 60.0
        assert settings.stream_queue_size == 64
        assert settings.stream_timeout == 600.0
        assert settings.vertex_region == "us-east5"
        assert settings.credential_for("anthropic") == ""

    def test_reads_prefixed_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LLMBRIDGE_ANTHROPIC_API_KEY", "sk-ant-secret-value")
        monkeypatch.setenv("LLMBRIDGE_STREAM_READ_TIMEOUT", "5")
        settings = Settings(_env_file=None)

        assert settings.credential_for("anthropic") == "sk-ant-secret-value"
        assert settings.stream_read_timeout == 5.0
        assert "sk-ant-secret-value" not in repr(settings)

    def test_unknown_provider_has_no_credential(self) -> None:
        assert Settings(_env_file=None).credential_for("nope") == ""


class TestAdapterConfig:
    def test_immutable(self) -> None:
        config = AdapterConfig(key="k", extra_headers={"x-a": "1"})
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.model = "other"  # type: ignore[misc]
        with pytest.raises(TypeError):
            config.extra_headers["x-b"] = "2"  # type: ignore[index]

    def test_key_hidden_from_repr(self) -> None:
        assert "super-secret" not in repr(AdapterConfig(key="super-secret"))

    def test_from_settings(self) -> None:
        settings = Settings(
            _env_file=None,
            vertex_credentials="proj|tok",
            vertex_region="europe-west4",
            publish_timeout=3,
        )
        config = AdapterConfig.from_settings("anthropic-vertex", settings, model="claude-3-5-haiku-20241022")

        assert config.key == "proj|tok"
        assert config.region == "europe-west4"
        assert config.publish_timeout == 3.0
        assert config.stream_timeout == 600.0
        assert config.model == "claude-3-5-haiku-20241022"

    def test_overrides_win(self) -> None:
        settings = Settings(_env_file=None, bedrock_credentials="us-east-1|ak|sk")
        config = AdapterConfig.from_settings("anthropic-bedrock", settings, key="eu-west-1|ak2|sk2")
        assert config.key == "eu-west-1|ak2|sk2"
