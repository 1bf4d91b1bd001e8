"""Configuration management using Pydantic settings."""
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetryConfig(BaseModel):
    """Retry and timeout policy for backend calls."""
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    operation_timeout: float = Field(default=30.0, gt=0)


class StreamingConfig(BaseModel):
    """Configuration for message streaming."""
    default_model: str = "llama3"
    show_live_response: bool = True
    chunk_timeout: float = Field(default=60.0, gt=0)
    service_name: str = "ollama"


class CircuitBreakerConfig(BaseModel):
    """Per-service circuit breaker thresholds."""
    failure_threshold: int = Field(default=5, ge=1)
    cooldown: float = Field(default=60.0, ge=0)
    error_reset_window: float = Field(default=300.0, gt=0)


class RecoveryConfig(BaseModel):
    """Timings used by recovery strategies."""
    connection_test_timeout: float = Field(default=10.0, gt=0)
    streaming_cooldown: float = Field(default=5.0, ge=0)
    state_settle_delay: float = Field(default=0.5, ge=0)


class ServiceConfig(BaseModel):
    """Configuration for service metadata."""
    name: str = "thinkstream"
    description: str = "Streaming chat pipeline with thinking extraction"


class AppConfig(BaseModel):
    """Main application configuration from YAML."""
    retry: RetryConfig = Field(default_factory=RetryConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)


class Settings(BaseSettings):
    """Environment-based settings."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    # Backend
    ollama_url: str = "http://localhost:11434"
    ollama_auth_token: str = ""

    # HTTP Client
    http_timeout: int = 120
    http_max_connections: int = 100

    # Chat sessions kept in memory
    max_chats: int = 1000

    # Config file path
    config_file: str = "config.yaml"


def load_yaml_config(config_path: str = "config.yaml") -> AppConfig:
    """Load configuration from YAML file, falling back to defaults."""
    config_file = Path(config_path)
    if not config_file.exists():
        return AppConfig()

    with open(config_file, "r", encoding="utf-8") as f:
        config_data = yaml.safe_load(f) or {}

    return AppConfig(**config_data)


# Global configuration instances
settings = Settings()
app_config = load_yaml_config(settings.config_file)
