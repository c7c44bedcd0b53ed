"""Factory for creating collaborator backends from settings."""

from lnbridge.config import STARKNET_TOKENS, Settings
from lnbridge.providers.base import LightningBackend, SettlementBackend
from lnbridge.providers.dryrun import DryRunLightningBackend, DryRunSettlementBackend
from lnbridge.providers.lnd import LndRestBackend
from lnbridge.providers.starknet import StarknetSettlementBackend


def get_lightning_backend(settings: Settings) -> LightningBackend:
    """Get the configured Lightning backend.

    Backend is selected based on LIGHTNING_BACKEND environment variable:
    - dryrun (default): In-memory invoices for testing
    - lnd: LND REST gateway

    Raises:
        ValueError: If the backend is unknown or lnd is not configured
    """
    backend = settings.lightning_backend.lower()

    if backend == "lnd":
        if not settings.lnd_rest_url or not settings.lnd_macaroon_hex:
            raise ValueError("LND_REST_URL and LND_MACAROON_HEX are required for the lnd backend")
        return LndRestBackend(
            rest_url=settings.lnd_rest_url,
            macaroon_hex=settings.lnd_macaroon_hex,
        )
    if backend == "dryrun":
        return DryRunLightningBackend(network=settings.lightning_network)

    raise ValueError(f"Unknown lightning backend: {settings.lightning_backend}")


def get_settlement_backend(settings: Settings) -> SettlementBackend:
    """Get the configured settlement backend (dryrun or starknet)."""
    backend = settings.settlement_backend.lower()

    if backend == "starknet":
        token_addresses = {
            symbol: settings.get_token_address(symbol) for symbol in STARKNET_TOKENS
        }
        return StarknetSettlementBackend(
            rpc_url=settings.resolved_starknet_rpc_url,
            relayer_url=settings.settlement_relayer_url,
            relayer_token=settings.settlement_relayer_token,
            token_addresses={k: v for k, v in token_addresses.items() if v and v != "0x0"},
        )
    if backend == "dryrun":
        return DryRunSettlementBackend()

    raise ValueError(f"Unknown settlement backend: {settings.settlement_backend}")
