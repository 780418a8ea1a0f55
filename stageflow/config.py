# stageflow/config.py
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STAGEFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_json: bool = False  # JSON lines for production, colored console otherwise
    log_transitions: bool = True  # INFO line per committed transition (DEBUG otherwise)

    # Engine behaviour
    history_limit: int = Field(default=100, ge=1)  # Committed stages kept for get_history()
    # Middleware cancellation policy:
    # False - cancelled send()/go_to() resolve with TransitionResult(cancelled=True)
    # True  - cancelled send()/go_to() raise TransitionCancelledError
    reject_cancelled_transitions: bool = False
    # Log unreachable, dead-end and timer-only stages when an engine is built
    config_warnings: bool = True


settings = Settings()
