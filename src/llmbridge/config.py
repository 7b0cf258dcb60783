from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LLMBRIDGE_",
        case_sensitive=False,
        extra="ignore",
    )

    # Observability
    otel_service_name: str = Field(default="llm-bridge")
    otel_exporter_otlp_endpoint: str | None = Field(default=None)
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    # Call behaviour
    request_timeout: float = Field(default=60.0, gt=0)
    stream_read_timeout: float = Field(default=30.0, gt=0)
    stream_queue_size: int = Field(default=64, ge=1)
    publish_timeout: float = Field(default=30.0, gt=0)
    stream_timeout: float | None = Field(default=600.0, gt=0)
    proxy_url: str | None = Field(default=None)

    # Provider credentials are SecretStr and never appear in a repr or log line.
    anthropic_api_key: SecretStr | None = Field(default=None)
    # "<project-id>|<access-token>"
    vertex_credentials: SecretStr | None = Field(default=None)
    vertex_region: str = Field(default="us-east5")
    # "<region>|<access-key-id>|<secret-access-key>"
    bedrock_credentials: SecretStr | None = Field(default=None)
    deepseek_api_key: SecretStr | None = Field(default=None)

    def credential_for(self, provider: str) -> str:
        secret = {
            "anthropic": self.anthropic_api_key,
            "anthropic-vertex": self.vertex_credentials,
            "anthropic-bedrock": self.bedrock_credentials,
            "deepseek": self.deepseek_api_key,
        }.get(provider)
        return secret.get_secret_value() if secret is not None else ""


@dataclass(frozen=True)
class AdapterConfig:
    """Everything one adapter instance needs, fixed at construction.

    Attributes:
        key: Credential material.  Its shape depends on the provider: an API
            key, a bearer token, ``"project|token"`` for Vertex AI, or
            ``"region|access_key|secret_key"`` for Bedrock.
        model: Model the adapter is bound to.  When empty, the model of each
            request is used.
        base_url: Overrides the provider's default endpoint.
        path: Overrides the provider's default path template.
        timeout: Deadline in seconds for a synchronous call, and for opening a
            stream.
        read_timeout: Maximum seconds between two frames of a stream.
        proxy_url: Optional outbound proxy.
        region: Cloud region where the provider needs one and the credential
            does not carry it.
        extra_headers: Additional static headers sent with every request.
        queue_size: Bound of each stream's chunk queue.
        publish_timeout: Seconds a stream producer waits on a full queue.
        stream_timeout: Deadline in seconds for a whole streaming call,
            counted from the call start.  ``None`` bounds a stream by
            ``read_timeout`` stalls only.
    """

    key: str = field(default="", repr=False)
    model: str = ""
    base_url: str = ""
    path: str = ""
    timeout: float = 60.0
    read_timeout: float | None = 30.0
    proxy_url: str | None = None
    region: str | None = None
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    queue_size: int = 64
    publish_timeout: float | None = 30.0
    stream_timeout: float | None = 600.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "extra_headers", MappingProxyType(dict(self.extra_headers)))

    @classmethod
    def from_settings(
        cls,
        provider: str,
        settings: "Settings | None" = None,
        **overrides: object,
    ) -> "AdapterConfig":
        """Build a config for *provider* from environment settings.

        Keyword *overrides* win over the settings values.
        """
        settings = settings or Settings()
        values: dict[str, object] = {
            "key": settings.credential_for(provider),
            "timeout": settings.request_timeout,
            "read_timeout": settings.stream_read_timeout,
            "proxy_url": settings.proxy_url,
            "queue_size": settings.stream_queue_size,
            "publish_timeout": settings.publish_timeout,
            "stream_timeout": settings.stream_timeout,
        }
        if provider == "anthropic-vertex":
            values["region"] = settings.vertex_region
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]
