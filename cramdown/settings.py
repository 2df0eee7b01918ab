from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CRAMDOWN_", extra="ignore")

    # Execution
    shell: str | None = None
    concurrency: int = Field(default=4, ge=1)
    kill_grace_seconds: float = Field(default=1.0, ge=0)

    # Output limits
    max_output_bytes: int = Field(default=1_048_576, ge=1)  # 1MB per stream

    # Markdown code block languages that hold tests (comma separated)
    markdown_languages: str = "cramdown"

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"

    @property
    def languages(self) -> tuple[str, ...]:
        return tuple(lang.strip() for lang in self.markdown_languages.split(",") if lang.strip())


SETTINGS = Settings()
