import os
from pathlib import Path

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_database_url() -> str:
    """Get database URL, using absolute path for SQLite to avoid path resolution issues.

    The SQLite default is meant for local development and tests. Deployments
    point DATABASE_URL at a server database.
    """
    db_url = os.getenv("DATABASE_URL", "")
    if db_url:
        logger.info(f"Using DATABASE_URL from environment: {db_url}")
        return db_url

    db_path = Path(__file__).parent.parent.parent / "coachplan.db"
    db_url = f"sqlite:///{db_path.resolve()}"
    logger.debug(f"Using local SQLite document store: {db_url}")
    return db_url


class Settings(BaseSettings):
    database_url: str = Field(
        default_factory=get_database_url,
        validation_alias="DATABASE_URL",
    )
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    store_backend: str = Field(
        default="sql",
        validation_alias="STORE_BACKEND",
        description="Document store backend: 'sql' or 'memory'",
    )
    indexed_fields: str = Field(
        default=(
            "client_session_content:provenance.source_id,"
            "client_plan_content:provenance.source_id,"
            "client_nutrition_plan_content:provenance.source_id,"
            "client_plan_assignments:client_program_id,"
            "client_programs:program_id,"
            "client_sessions:client_id"
        ),
        validation_alias="INDEXED_FIELDS",
        description="Comma-separated collection:field pairs the store can query by equality",
    )
    require_provenance_index: bool = Field(
        default=False,
        validation_alias="REQUIRE_PROVENANCE_INDEX",
        description="Fail propagation instead of falling back to a full collection scan",
    )
    audit_enabled: bool = Field(
        default=True,
        validation_alias="AUDIT_ENABLED",
        description="Append content events to the audit_events collection",
    )
    default_session_title: str = Field(default="Session", validation_alias="DEFAULT_SESSION_TITLE")
    default_exercise_title: str = Field(default="Exercise", validation_alias="DEFAULT_EXERCISE_TITLE")
    personalized_week_title: str = Field(default="Personalized week", validation_alias="PERSONALIZED_WEEK_TITLE")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(valid_levels)}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, value: str) -> str:
        """Validate the store backend name."""
        lowered = value.strip().lower()
        if lowered not in {"sql", "memory"}:
            raise ValueError(f"STORE_BACKEND must be 'sql' or 'memory', got '{value}'")
        return lowered

    def indexed_field_map(self) -> dict[str, set[str]]:
        """Parse INDEXED_FIELDS into {collection: {field, ...}}.

        Collection names may be patterns ending in '*' to cover nested
        subcollections (e.g. 'client_plan_content/*').
        """
        result: dict[str, set[str]] = {}
        for raw in self.indexed_fields.split(","):
            entry = raw.strip()
            if not entry or ":" not in entry:
                continue
            collection, field = entry.rsplit(":", 1)
            result.setdefault(collection.strip(), set()).add(field.strip())
        return result

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


settings = Settings()
