"""Resolver configuration."""

from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mailkeys.models import Protocol, Validity


class Settings(BaseSettings):
    """Resolver defaults loaded from environment variables (MAILKEYS_*)."""

    # Lowest user ID validity accepted for an automatically found encryption key
    minimum_validity: str = "marginal"

    # Allow a per-recipient mix of OpenPGP and S/MIME when no single protocol covers everyone
    allow_mixed_protocols: bool = True

    # Tie-break between protocols: "openpgp", "cms" or unset
    preferred_protocol: Optional[Protocol] = None

    # Institutional compliance policy
    # Options: "disabled" (default), "de-vs"
    compliance_mode: str = "disabled"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="MAILKEYS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("minimum_validity")
    @classmethod
    def _check_validity(cls, value: str) -> str:
        return Validity.parse(value).name.lower()

    @field_validator("compliance_mode")
    @classmethod
    def _check_compliance_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in ("disabled", "de-vs"):
            raise ValueError(f"Unknown compliance mode: {value!r}")
        return normalized

    @property
    def minimum_validity_level(self) -> Validity:
        return Validity.parse(self.minimum_validity)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
