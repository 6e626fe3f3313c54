from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="chat-gateway")
    app_version: str = Field(default="0.1.0")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # AWS.  Credentials fall back to the standard boto chain when unset.
    aws_region: str = Field(default="us-east-1")
    aws_access_key_id: SecretStr | None = Field(default=None)
    aws_secret_access_key: SecretStr | None = Field(default=None)
    aws_session_token: SecretStr | None = Field(default=None)

    # Observability
    otel_exporter_otlp_endpoint: str = Field(default="http://jaeger:4318")
    otel_service_name: str = Field(default="chat-gateway")
    log_level: str = Field(default="INFO")

    # Model invocation
    default_model_id: str = Field(default="claude-sonnet-4")
    llm_timeout: int = Field(default=60, gt=0)
    # Total attempts for buffered calls made by the HTTP layer; 1 disables retries.
    llm_max_retries: int = Field(default=1, ge=1)
    thinking_budget_tokens: int = Field(default=5000, gt=0)
    attachment_text_limit: int | None = Field(default=50_000, gt=0)


settings = Settings()
