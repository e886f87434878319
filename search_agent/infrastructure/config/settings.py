"""
Service configuration.

Values come from environment variables (or a local ``.env`` file). Required
values are checked together so a misconfigured deployment reports every
missing name at once.
"""

from typing import Any, Dict, List, Optional

from pydantic import Field, ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from search_agent.domain.errors import ConfigurationError

REQUIRED_SETTINGS: Dict[str, str] = {
    "model_api_key": "MODEL_API_KEY",
    "search_api_key": "SEARCH_API_KEY",
    "search_engine_id": "SEARCH_ENGINE_ID",
    "checkpoint_store_url": "CHECKPOINT_STORE_URL",
    "admin_api_key": "ADMIN_API_KEY",
}


class Settings(BaseSettings):
    """Environment configuration"""

    # ---- required ----
    model_api_key: Optional[str] = Field(default=None, description="Language model credential")
    search_api_key: Optional[str] = Field(default=None, description="Google Custom Search API key")
    search_engine_id: Optional[str] = Field(default=None, description="Google Custom Search engine id")
    checkpoint_store_url: Optional[str] = Field(
        default=None, description="redis://host:port/db or memory:// for a process-local store"
    )
    admin_api_key: Optional[str] = Field(default=None, description="Bearer secret for service callers")

    # ---- model ----
    model_name: str = Field(default="gemini-2.0-flash")
    model_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    model_max_output_tokens: int = Field(default=2048, ge=1)
    model_timeout_seconds: float = Field(default=60.0, gt=0)

    # ---- agent loop ----
    tool_timeout_seconds: float = Field(default=8.0, gt=0)
    max_tool_steps: int = Field(default=5, ge=1, le=20)
    stream_queue_size: int = Field(default=32, ge=1)
    checkpoint_ttl_seconds: int = Field(default=60 * 60 * 24 * 7, ge=1)

    # ---- optional tools ----
    unsplash_access_key: Optional[str] = None

    # ---- service ----
    service_name: str = Field(default="search-agent")
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", pattern="^(json|console)$")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    def missing_required(self) -> List[str]:
        return [
            env_name
            for field_name, env_name in REQUIRED_SETTINGS.items()
            if not (getattr(self, field_name) or "").strip()
        ]

    def require_complete(self) -> "Settings":
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(missing=missing)
        return self


def load_settings(**overrides: Any) -> Settings:
    """Load and validate settings, raising ConfigurationError on any problem"""

    try:
        settings = Settings(**overrides)
    except PydanticValidationError as e:
        invalid = [".".join(str(p) for p in err["loc"]).upper() for err in e.errors()]
        raise ConfigurationError(
            missing=invalid,
            message=f"Invalid configuration values: {', '.join(invalid)}"
        ) from e
    return settings.require_complete()
