"""Starknet settlement backend.

Transfers are signed and submitted by an external relayer service (the
server holds no keys); finality is read directly from a Starknet JSON-RPC
node with ``starknet_getTransactionStatus``.
"""

import logging
from typing import Optional

import httpx

from lnbridge.providers.base import (
    SettlementBackend,
    SettlementReceipt,
    SettlementState,
    TokenTransfer,
)
from lnbridge.swap.errors import PermanentIntegrationError, TransientIntegrationError

logger = logging.getLogger(__name__)

# JSON-RPC error code for unknown transactions
TXN_HASH_NOT_FOUND = 29

FINALIZED_STATUSES = {"ACCEPTED_ON_L2", "ACCEPTED_ON_L1"}

# starknet_keccak("Transfer"), first key of ERC-20 Transfer events
TRANSFER_EVENT_KEY = 0x99CD8BDE557814842A3121E8DDFD433A539B8C9F14BF31EBF108D12E6196E9


class StarknetSettlementBackend(SettlementBackend):
    """Settlement backend using a transfer relayer and a Starknet RPC node."""

    def __init__(
        self,
        rpc_url: str,
        relayer_url: str,
        token_addresses: dict[str, str],
        relayer_token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.relayer_url = relayer_url.rstrip("/")
        self.token_addresses = token_addresses
        self.relayer_token = relayer_token
        self.timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._rpc_id = 0

    @property
    def name(self) -> str:
        return "starknet"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._http_client

    async def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> dict:
        client = await self._get_client()
        try:
            response = await client.post(url, json=payload, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientIntegrationError(f"Starknet endpoint unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientIntegrationError(f"{url} returned {response.status_code}")
        if response.status_code >= 400:
            raise PermanentIntegrationError(f"{url} rejected request: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise TransientIntegrationError(f"{url} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise TransientIntegrationError(f"{url} returned an unexpected body")
        return data

    async def _rpc(self, method: str, params: dict) -> dict:
        self._rpc_id += 1
        data = await self._post(
            self.rpc_url,
            {"jsonrpc": "2.0", "id": self._rpc_id, "method": method, "params": params},
        )
        if "error" in data:
            error = data["error"]
            if error.get("code") == TXN_HASH_NOT_FOUND:
                return {}
            raise PermanentIntegrationError(f"{method} failed: {error.get('message')}")
        return data.get("result", {})

    async def submit_transfer(
        self, recipient: str, token: str, amount: int, reference: str
    ) -> str:
        if not self.relayer_url:
            raise PermanentIntegrationError("Settlement relayer URL not configured")

        token_address = self.token_addresses.get(token.upper())
        if not token_address:
            raise PermanentIntegrationError(f"No contract address for token {token}")

        headers = {"Authorization": f"Bearer {self.relayer_token}"} if self.relayer_token else None
        data = await self._post(
            f"{self.relayer_url}/transfers",
            {
                "recipient": recipient,
                "token": token_address,
                "amount": str(amount),
                "reference": reference,
            },
            headers=headers,
        )

        tx_hash = data.get("transactionHash") or data.get("transaction_hash")
        if not tx_hash:
            raise PermanentIntegrationError("Relayer response missing transaction hash")

        logger.info(f"Submitted Starknet transfer {tx_hash}: {amount} {token} to {recipient}")
        return tx_hash

    async def get_receipt(self, tx_hash: str) -> SettlementReceipt:
        result = await self._rpc(
            "starknet_getTransactionStatus", {"transaction_hash": tx_hash}
        )
        if not result:
            return SettlementReceipt(tx_hash=tx_hash, state=SettlementState.PENDING)

        finality = result.get("finality_status", "")
        execution = result.get("execution_status")

        if finality == "REJECTED" or execution == "REVERTED":
            return SettlementReceipt(
                tx_hash=tx_hash,
                state=SettlementState.REVERTED,
                reason=result.get("failure_reason") or finality or execution,
            )
        if finality in FINALIZED_STATUSES:
            return SettlementReceipt(
                tx_hash=tx_hash,
                state=SettlementState.FINALIZED,
                transfers=await self._get_transfers(tx_hash),
            )

        return SettlementReceipt(tx_hash=tx_hash, state=SettlementState.PENDING)

    async def _get_transfers(self, tx_hash: str) -> list[TokenTransfer]:
        """Transfer events of supported tokens emitted by a transaction.

        Older token contracts put ``from, to, amount.low, amount.high`` in the
        event data; newer ones move ``from`` and ``to`` into the keys.
        """
        receipt = await self._rpc(
            "starknet_getTransactionReceipt", {"transaction_hash": tx_hash}
        )
        symbols = {int(address, 16): symbol for symbol, address in self.token_addresses.items()}

        transfers = []
        for event in receipt.get("events", []):
            keys = event.get("keys", [])
            if not keys or int(keys[0], 16) != TRANSFER_EVENT_KEY:
                continue
            symbol = symbols.get(int(event.get("from_address", "0x0"), 16))
            if symbol is None:
                continue

            fields = keys[1:] + event.get("data", [])
            if len(fields) < 4:
                logger.warning(f"Malformed Transfer event in {tx_hash}: {event}")
                continue
            transfers.append(
                TokenTransfer(
                    recipient=fields[1],
                    token=symbol,
                    amount=int(fields[2], 16) + (int(fields[3], 16) << 128),
                )
            )
        return transfers

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
