from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="chatgateway")
    app_version: str = Field(default="0.1.0")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Observability
    otel_exporter_otlp_endpoint: str = Field(default="http://jaeger:4318")
    otel_service_name: str = Field(default="chatgateway")
    log_level: str = Field(default="INFO")

    # Provider credentials, stored as SecretStr so they never end up in logs
    openai_api_key: SecretStr | None = Field(default=None)
    anthropic_api_key: SecretStr | None = Field(default=None)
    cohere_api_key: SecretStr | None = Field(default=None)
    groq_api_key: SecretStr | None = Field(default=None)
    together_api_key: SecretStr | None = Field(default=None)
    openrouter_api_key: SecretStr | None = Field(default=None)
    xai_api_key: SecretStr | None = Field(default=None)

    # Provider endpoints and attribution
    ollama_host: str = Field(default="http://localhost:11434")
    openrouter_site_url: str | None = Field(default=None)
    openrouter_site_name: str | None = Field(default=None)

    # Call behaviour (seconds / attempts)
    llm_timeout: float = Field(default=60.0)
    llm_stream_timeout: float = Field(default=300.0)
    ollama_timeout: float = Field(default=120.0)
    # Total attempts per call, the first one included.  LLM_MAX_RETRIES is
    # still read for existing deployments.
    llm_max_attempts: int = Field(
        default=3,
        ge=1,
        validation_alias=AliasChoices("llm_max_attempts", "llm_max_retries"),
    )

    # Routing defaults
    default_provider: str = Field(default="openai")
    openai_family_provider: str = Field(default="openai")
    fast_inference_provider: str = Field(default="groq")

    def api_key_for(self, provider: str) -> str | None:
        """Return the plain-text credential configured for *provider*, if any."""
        secret = getattr(self, f"{provider}_api_key", None)
        if isinstance(secret, SecretStr):
            value = secret.get_secret_value()
            return value or None
        return None

    def configured_providers(self) -> list[str]:
        """Provider keys that can be used without further configuration."""
        keys = ["openai", "anthropic", "cohere", "groq", "together", "openrouter", "xai"]
        return [key for key in keys if self.api_key_for(key)] + ["ollama"]


settings = Settings()
