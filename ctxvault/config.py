"""
Configuration management for ctxvault.

This module uses Pydantic's BaseSettings to manage configuration
through environment variables. Settings are built once by the CLI and
passed explicitly into each component; nothing in the package reads a
module-level settings instance.
"""
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings.

    These settings are loaded from environment variables prefixed with
    ``CTXVAULT_`` (or a local ``.env`` file).
    """

    # Project layout
    PROJECT_ROOT: Path | None = None
    STATE_DIR: str = ".ctxvault"

    # Signing
    SIGN_EXPORTS: bool = False  # environment override, signing step 4
    KEY_PASSPHRASE: str | None = None

    # Audit
    REDACTION_EXAMPLES: int = 5

    # Trust tokens
    TRUST_DEFAULT_MINUTES: int = 15

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        env_prefix="CTXVAULT_",
        extra="ignore",
    )

    @field_validator("STATE_DIR")
    @classmethod
    def validate_state_dir(cls, v: str) -> str:
        if not v or "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("STATE_DIR must be a single directory name")
        return v

    @field_validator("REDACTION_EXAMPLES", "TRUST_DEFAULT_MINUTES")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def project_root(self) -> Path:
        """Resolved project root; the working directory when unset."""
        root = self.PROJECT_ROOT or Path.cwd()
        return Path(root).resolve()
