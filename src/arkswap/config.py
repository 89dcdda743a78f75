"""Application configuration using pydantic-settings.

Values come from environment variables or a local .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Counterparty endpoints per ledger network
DEFAULT_SWAP_API_URLS = {
    "bitcoin": "https://boltz.arkade.sh",
    "mutinynet": "https://api.boltz.mutinynet.arkade.sh",
    "regtest": "http://localhost:9069",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")

    # ======================
    # Network
    # ======================
    network: str = Field(
        default="bitcoin",
        description="Ledger network (bitcoin, mutinynet, signet, testnet, regtest)",
    )
    swap_api_url: Optional[str] = Field(
        default=None, description="Swap counterparty API URL (defaults per network)"
    )
    http_timeout: float = Field(default=30.0, description="HTTP request timeout in seconds")

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/arkswap.db",
        description="Database connection URL for swap persistence",
    )

    # ======================
    # Swap Manager
    # ======================
    swap_manager_enabled: bool = Field(
        default=True, description="Run the background swap manager"
    )
    swap_manager_auto_actions: bool = Field(
        default=True, description="Claim and refund automatically on status updates"
    )
    poll_interval: float = Field(
        default=30.0, description="Seconds between status polls of a monitored swap"
    )
    poll_retry_delay: float = Field(
        default=5.0, description="Initial backoff after a failed status poll"
    )
    max_poll_retry_delay: float = Field(
        default=300.0, description="Upper bound of the status poll backoff"
    )

    # ======================
    # Chain swaps
    # ======================
    default_fee_sats_per_byte: float = Field(
        default=1.0, description="Fee rate for Bitcoin claim transactions"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def resolved_swap_api_url(self) -> str:
        """Swap API URL, falling back to the network default."""
        if self.swap_api_url:
            return self.swap_api_url.rstrip("/")
        url = DEFAULT_SWAP_API_URLS.get(self.network)
        if url is None:
            raise ValueError(f"No default swap API URL for network {self.network!r}")
        return url

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "network": self.network,
            "swap_api_url": self._redact_url(self.swap_api_url or "(network default)"),
            "http_timeout": self.http_timeout,
            "database_url": self._redact_url(self.database_url),
            "swap_manager": {
                "enabled": self.swap_manager_enabled,
                "auto_actions": self.swap_manager_auto_actions,
                "poll_interval": self.poll_interval,
                "poll_retry_delay": self.poll_retry_delay,
                "max_poll_retry_delay": self.max_poll_retry_delay,
            },
            "default_fee_sats_per_byte": self.default_fee_sats_per_byte,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials embedded in a URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
