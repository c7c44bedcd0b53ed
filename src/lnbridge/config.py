"""Application configuration using pydantic-settings.

Covers swap limits, fee schedule, gas reserve and the collaborator backends
(Lightning node, Starknet settlement, identity provider).
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Network presets
NETWORK_CONFIG = {
    "mainnet": {
        "starknet_rpc_url": "https://starknet-mainnet.public.blastapi.io/rpc/v0_7",
        "bitcoin_network": "MAINNET",
    },
    "testnet": {
        "starknet_rpc_url": "https://starknet-sepolia.public.blastapi.io/rpc/v0_7",
        "bitcoin_network": "TESTNET",
    },
}

# Token contract addresses on Starknet
STARKNET_TOKENS = {
    "WBTC": {
        "mainnet": "0x03fe2b97c1fd336e750087d68b9b867997fd64a2661ff3ca5a7c771641e8e7ac",
        "testnet": "0x0",
    },
    "USDC": {
        "mainnet": "0x053c91253bc9682c04929ca02ed00b3e423f6710d2ee7e0d5ebb06f3ecf368a8",
        "testnet": "0x0",
    },
    "USDT": {
        "mainnet": "0x068f5c6a61780768455de69077e07e89787839bf8166decfbf92b645209c0fb8",
        "testnet": "0x0",
    },
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
    debug: bool = Field(default=True, description="Enable debug mode")

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Network
    # ======================
    lightning_network: str = Field(default="testnet", description="mainnet or testnet")

    # ======================
    # Swap limits (sats)
    # ======================
    min_swap_amount: int = Field(default=10_000, gt=0, description="Minimum swap amount in sats")
    max_swap_amount: int = Field(
        default=100_000_000, gt=0, description="Maximum swap amount in sats"
    )

    # ======================
    # Fees
    # ======================
    service_fee_bps: int = Field(default=100, ge=0, le=10_000, description="Service fee (100 = 1%)")
    lightning_network_fee_sats: int = Field(
        default=100, ge=0, description="Lightning base fee in sats"
    )
    onchain_network_fee_sats: int = Field(
        default=5000, ge=0, description="On-chain fee estimate in sats"
    )

    # ======================
    # Gas reserve
    # ======================
    gas_reserve_percentage: int = Field(
        default=2, ge=0, le=100, description="Percent of proceeds reserved for Starknet gas"
    )
    enable_auto_gas_reserve: bool = Field(
        default=True, description="Reserve gas automatically when swapping into Starknet"
    )

    # ======================
    # Tokens
    # ======================
    default_target_token: str = Field(default="WBTC", description="Default Starknet token")
    supported_tokens: str = Field(
        default="WBTC,USDC,USDT", description="Comma-separated list of supported tokens"
    )

    # ======================
    # Expiry
    # ======================
    quote_ttl_seconds: int = Field(default=300, gt=0, description="Quote validity period")
    invoice_expiry_seconds: int = Field(default=3600, gt=0, description="Invoice validity period")

    # ======================
    # Retries and watching
    # ======================
    max_retries: int = Field(default=3, ge=0, description="Retries for transient backend errors")
    retry_delay_seconds: float = Field(
        default=5.0, ge=0, description="Base delay for exponential backoff"
    )
    auto_watch: bool = Field(default=True, description="Start a watcher task per created swap")
    watch_poll_interval_seconds: float = Field(
        default=5.0, gt=0, description="Seconds between status polls"
    )
    watch_max_duration_seconds: float = Field(
        default=7200, gt=0, description="Hard deadline for watching a single swap"
    )

    # ======================
    # Storage
    # ======================
    swap_store: str = Field(default="memory", description="Swap store backend: memory or sql")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/lnbridge.db",
        description="Database connection URL (sql store only)",
    )

    # ======================
    # Lightning backend
    # ======================
    lightning_backend: str = Field(default="dryrun", description="dryrun or lnd")
    lnd_rest_url: str = Field(default="", description="LND REST endpoint")
    lnd_macaroon_hex: str = Field(default="", description="LND invoice/admin macaroon (hex)")

    # ======================
    # Settlement backend
    # ======================
    settlement_backend: str = Field(default="dryrun", description="dryrun or starknet")
    starknet_rpc_url: Optional[str] = Field(
        default=None, description="Starknet JSON-RPC URL (network preset if unset)"
    )
    settlement_relayer_url: str = Field(
        default="", description="Relayer that signs and submits Starknet transfers"
    )
    settlement_relayer_token: str = Field(default="", description="Relayer API token")
    settlement_deposit_address: str = Field(
        default="", description="Service account receiving Starknet -> Lightning debits"
    )

    # ======================
    # Identity provider
    # ======================
    identity_provider: str = Field(default="static", description="static or remote")
    auth_tokens: str = Field(
        default="", description="Static bearer tokens: token:user_id,token:user_id"
    )
    identity_url: str = Field(
        default="", description="Endpoint resolving a bearer token to a user id"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def token_list(self) -> list[str]:
        """Parse supported tokens into a list of symbols."""
        return [t.strip().upper() for t in self.supported_tokens.split(",") if t.strip()]

    @property
    def static_tokens(self) -> dict[str, str]:
        """Parse static bearer tokens into a token -> user id mapping."""
        tokens: dict[str, str] = {}
        for pair in self.auth_tokens.split(","):
            if ":" not in pair:
                continue
            token, user_id = pair.split(":", 1)
            if token.strip() and user_id.strip():
                tokens[token.strip()] = user_id.strip()
        return tokens

    @property
    def resolved_starknet_rpc_url(self) -> str:
        """Get Starknet RPC URL, falling back to the network preset."""
        if self.starknet_rpc_url:
            return self.starknet_rpc_url
        preset = NETWORK_CONFIG.get(self.lightning_network, NETWORK_CONFIG["testnet"])
        return preset["starknet_rpc_url"]

    def get_token_address(self, token: str) -> str:
        """Get the Starknet contract address of a token on the active network."""
        addresses = STARKNET_TOKENS.get(token.upper(), {})
        return addresses.get(self.lightning_network, "")

    def public_swap_config(self) -> dict:
        """Swap configuration exposed to clients."""
        return {
            "network": self.lightning_network,
            "minSwapAmount": self.min_swap_amount,
            "maxSwapAmount": self.max_swap_amount,
            "gasReservePercentage": self.gas_reserve_percentage,
            "enableAutoGasReserve": self.enable_auto_gas_reserve,
            "supportedTokens": self.token_list,
            "depositAddress": self.settlement_deposit_address or None,
        }

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "network": self.lightning_network,
            "swap_store": self.swap_store,
            "database_url": self._redact_url(self.database_url),
            "lightning": {
                "backend": self.lightning_backend,
                "rest_url": self.lnd_rest_url or "(not set)",
                "macaroon": "***" if self.lnd_macaroon_hex else "(not set)",
            },
            "settlement": {
                "backend": self.settlement_backend,
                "rpc": self.resolved_starknet_rpc_url,
                "relayer": self.settlement_relayer_url or "(not set)",
                "relayer_token": "***" if self.settlement_relayer_token else "(not set)",
                "deposit_address": self.settlement_deposit_address or "(not set)",
            },
            "auth": {
                "provider": self.identity_provider,
                "static_tokens": len(self.static_tokens),
            },
            "limits": {
                "min_swap_amount": self.min_swap_amount,
                "max_swap_amount": self.max_swap_amount,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
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
