"""Client configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables (prefix ``LOBBY_``)."""

    model_config = SettingsConfigDict(
        env_prefix="LOBBY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = "localhost"
    port: int = 13050

    # Security
    password: str = ""

    # Game type requested when preparing or joining games
    game_type: str = "swc_2021_blokus"

    # Seconds to wait for a PrepareGame response
    prepare_timeout: float = 10.0

    # Seconds a game start may take before it is abandoned (None waits forever)
    start_timeout: float | None = 300.0

    # Maximum number of callback invocations running at once
    callback_workers: int = 4

    log_level: str = "INFO"

    @property
    def address(self) -> str:
        """Server address as host:port."""
        return f"{self.host}:{self.port}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
