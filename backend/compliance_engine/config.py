from dataclasses import dataclass
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_DEFAULT_PACKS_DIR = Path(__file__).resolve().parent / "packs"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_NAME: str = "ComplianceEngine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str

    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Kill switch for catalog reads and provisioning
    ENABLE_FRAMEWORK_ENGINE: bool = True
    FRAMEWORK_PACKS_DIR: str = str(_DEFAULT_PACKS_DIR)

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]


@dataclass(frozen=True)
class FeatureFlags:
    """Feature switches handed to gated components at construction time."""

    enable_framework_engine: bool = True

    @classmethod
    def from_settings(cls, cfg: Settings) -> "FeatureFlags":
        return cls(enable_framework_engine=cfg.ENABLE_FRAMEWORK_ENGINE)


settings = Settings()
