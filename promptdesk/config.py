"""Configuration for the promptdesk server and setup tooling.

Values come from environment variables (no prefix, matching the names the
local deployment has always used) with an optional ``.env`` file as
fallback, then the defaults below.

Example .env file:
    DB_HOST=localhost
    DB_PORT=5432
    DB_NAME=promptdesk
    DB_USER=postgres
    DB_PASSWORD=postgres
    PORT=3000
    RESOURCES=prompts,tags,characters
    SEARCH_COLUMNS={"prompts": ["title", "content", "notes"]}
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RESOURCES = (
    "prompts",
    "tags",
    "characters",
    "character_details",
    "gallery_items",
    "collections",
    "prompt_tags",
    "style_profiles",
    "style_keywords",
    "style_learning",
    "batch_tests",
    "batch_test_prompts",
    "batch_test_results",
    "model_usage",
    "user_profiles",
)

# Single-tenant placeholder identity, also seeded into user_profiles.
LOCAL_USER_ID = "88ea3bcb-d9a8-44b5-ac26-c90885a74686"


class Settings(BaseSettings):
    """Server, database and resource settings.

    Attributes
    ----------
    db_host, db_port, db_name, db_user, db_password : connection parameters
    db_schema : schema the mounted tables live in
    db_minconn, db_maxconn : connection pool bounds
    host, port : address uvicorn binds to
    log_level : root logging level for the CLI entry points
    default_owner_id : identity injected into rows that omit ``user_id``
    resources : comma-separated tables exposed under ``/api/<name>``
    search_columns : table -> columns searched by ``?search=``; tables not
        listed search all of their text columns
    schema_cache_ttl : seconds a table's column map is reused; 0 reads the
        catalog on every request
    tables_dir : directory of JSON table configs used by ``promptdesk-setup-db``
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    db_host: str = "localhost"
    db_port: int = Field(default=5432, ge=1, le=65535)
    db_name: str = "promptdesk"
    db_user: str = "postgres"
    db_password: str | None = None
    db_schema: str = "public"
    db_minconn: int = Field(default=1, ge=1)
    db_maxconn: int = Field(default=10, ge=1)

    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)
    log_level: str = "INFO"

    default_owner_id: str | None = LOCAL_USER_ID
    resources: str = ",".join(DEFAULT_RESOURCES)
    search_columns: dict[str, list[str]] = Field(default_factory=dict)
    schema_cache_ttl: float = Field(default=0, ge=0)
    tables_dir: Path = Path(__file__).resolve().parent / "tables"

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("db_maxconn")
    @classmethod
    def _pool_bounds(cls, value: int, info) -> int:
        minconn = info.data.get("db_minconn", 1)
        if value < minconn:
            raise ValueError(f"db_maxconn ({value}) must be >= db_minconn ({minconn})")
        return value

    @property
    def resource_names(self) -> tuple[str, ...]:
        names = [n.strip() for n in self.resources.split(",")]
        return tuple(dict.fromkeys(n for n in names if n))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
