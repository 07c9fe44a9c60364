from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"

PUBLIC_DEVNET_RPC_URL = "https://api.devnet.solana.com"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Ledger RPC settings
    SOLANA_RPC_URL: str | None = None
    HELIUS_API_KEY: str | None = None
    HELIUS_API_BASE_URL: str = "https://api-devnet.helius-rpc.com/v0"

    # Program identities
    PROGRAM_ID: str = "BiAB1qZpx8kDgS5dJxKFdCJDNMagCn8xfj4afNhRZWms"
    DELEGATION_PROGRAM_ID: str = "DELeGGvXpWV2fqJUhqcF5ZSYMS4JTLjteaAMARRSaeSh"
    PLATFORM_FEE_RECIPIENT: str | None = None

    # Crank settings
    CRANK_WALLET_PRIVATE_KEY: str | None = None
    CRON_SECRET: str | None = None

    # =================================================================
    # RPC CLIENT SETTINGS - retry and throttling
    # =================================================================
    RPC_TIMEOUT: float = 30.0
    RPC_MAX_RETRIES: int = 4
    RPC_BACKOFF_BASE: float = 2.0
    RPC_BACKOFF_MAX: float = 10.0
    RPC_MAX_CONCURRENCY: int = 8

    # =================================================================
    # SCAN / CRANK SETTINGS
    # =================================================================
    SCAN_PAGE_SIZE: int = 100
    SCAN_MAX_PAGES: int = 200
    CRANK_MAX_CONCURRENCY: int = 4
    CRANK_DEADLINE_SECONDS: float = 240.0
    INDEX_DEADLINE_SECONDS: float = 120.0
    CRANK_INTERVAL_MINUTES: int = 5

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def rpc_url(self) -> str:
        """
        Resolve the primary ledger RPC endpoint.
        An explicit SOLANA_RPC_URL wins, then Helius (when an API key is set),
        then the public devnet endpoint.
        """
        if self.SOLANA_RPC_URL:
            return self.SOLANA_RPC_URL
        if self.HELIUS_API_KEY:
            return f"https://devnet.helius-rpc.com/?api-key={self.HELIUS_API_KEY}"
        return PUBLIC_DEVNET_RPC_URL

    def masked_rpc_url(self) -> str:
        """RPC URL safe for logs (API key removed)."""
        url = self.rpc_url()
        if self.HELIUS_API_KEY:
            return url.replace(self.HELIUS_API_KEY, "***")
        return url

    def enhanced_history_enabled(self) -> bool:
        return bool(self.HELIUS_API_KEY)

    def get_rpc_client_config(self) -> dict:
        """
        Get ledger client configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "timeout": self.RPC_TIMEOUT,
            "max_retries": self.RPC_MAX_RETRIES,
            "backoff_base": self.RPC_BACKOFF_BASE,
            "backoff_max": self.RPC_BACKOFF_MAX,
            "max_concurrency": self.RPC_MAX_CONCURRENCY,
        }

        if self.environment == "development":
            # Public devnet endpoints throttle aggressively
            config.update(
                {
                    "max_concurrency": min(self.RPC_MAX_CONCURRENCY, 4),
                }
            )

        return config


settings = Settings()
