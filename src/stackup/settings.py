"""
Operator settings, read from STACKUP_* environment variables and an optional .env file.
"""
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .MANAGERS.image_manager import PullPolicy


class Settings(BaseSettings):
    """
    Defaults for the CLI; every field can be overridden by a command line option.
    """

    model_config = SettingsConfigDict(
        env_prefix="STACKUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
    )

    project_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("STACKUP_PROJECT_NAME", "COMPOSE_PROJECT_NAME"),
    )
    runtime: str = "docker"
    pull_policy: PullPolicy = PullPolicy.MISSING
    max_restarts: int = Field(default=5, ge=1)
    start_timeout: float = Field(default=60.0, gt=0)
    poll_interval: float = Field(default=0.5, ge=0)
    parallel: bool = True
    max_workers: int = Field(default=4, ge=1)
    state_dir: str = ".stackup"
    log_level: str = "INFO"

    @classmethod
    def load(cls, env_file: Optional[str] = None) -> "Settings":
        """
        Builds settings from the environment; the process environment takes
        precedence over the .env file, and a missing .env file is ignored.
        """
        return cls(_env_file=env_file)
