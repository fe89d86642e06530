"""
Client settings loaded from environment variables.
Uses pydantic-settings for type-safe configuration.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client settings with defaults for development."""

    # API credentials
    # The secret is only needed for server-side clients and token signing
    api_key: str = ""
    api_secret: str = ""

    # Endpoints
    base_url: str = "https://chat-us-east-1.stream-io-api.com"
    ws_url: str = "wss://chat-us-east-1.stream-io-api.com/connect"

    # REST
    request_timeout: float = 6.0  # Seconds per HTTP request

    # Realtime transport
    connect_timeout: float = 10.0  # Handshake must complete within this window
    # The backend expects a ping at least every 30s; 25s leaves room for jitter
    health_check_interval: float = 25.0
    # No frame at all for this long means the connection is dead
    health_check_timeout: float = 35.0
    max_message_size: int = 1024 * 1024  # 1 MB per inbound frame

    # Reconnection (exponential backoff with jitter)
    reconnect_initial_delay: float = 0.5
    reconnect_max_delay: float = 30.0
    reconnect_backoff_base: float = 2.0
    reconnect_jitter_factor: float = 0.25
    # None = retry forever, the default for long-lived sessions
    reconnect_max_attempts: int | None = None
    # Attempts made by an explicit connect() before NetworkError is raised
    connect_max_attempts: int = 3

    # Environment
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    class Config:
        env_prefix = "CHAT_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def validate_client_settings(self) -> list[str]:
        """
        Validate that the settings describe a usable client.
        Returns a list of validation errors. Empty list means all checks pass.
        """
        errors = []

        if not self.api_key:
            errors.append("CHAT_API_KEY must be set")

        if self.health_check_timeout <= self.health_check_interval:
            errors.append(
                "CHAT_HEALTH_CHECK_TIMEOUT must be longer than CHAT_HEALTH_CHECK_INTERVAL"
            )

        if self.reconnect_max_delay < self.reconnect_initial_delay:
            errors.append(
                "CHAT_RECONNECT_MAX_DELAY must be >= CHAT_RECONNECT_INITIAL_DELAY"
            )

        if self.environment == "production" and self.debug:
            errors.append("CHAT_DEBUG must be False in production")

        return errors


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience exports
settings = get_settings()
