"""LND REST client implementing the Lightning backend interface."""

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from lnbridge.providers.base import (
    DecodedInvoice,
    InvoiceStatus,
    LightningBackend,
    PaymentResult,
    PaymentState,
)
from lnbridge.swap.errors import (
    PermanentIntegrationError,
    TransientIntegrationError,
    UnknownInvoiceError,
)
from lnbridge.swap.models import LightningInvoice, utcnow

logger = logging.getLogger(__name__)

# BOLT11 default when an invoice carries no expiry field
DEFAULT_INVOICE_EXPIRY = 3600

# Most recent outgoing payments searched when tracking a payout
PAYMENT_SCAN_LIMIT = 1000

IN_FLIGHT_STATUSES = {"IN_FLIGHT", "INITIATED"}


def _b64_to_hex(value: str) -> str:
    return base64.b64decode(value).hex() if value else ""


class LndRestBackend(LightningBackend):
    """Lightning backend talking to an LND node over its REST gateway."""

    def __init__(
        self,
        rest_url: str,
        macaroon_hex: str,
        timeout: float = 30.0,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rest_url = rest_url.rstrip("/")
        self.macaroon_hex = macaroon_hex
        self.timeout = timeout
        self.verify = verify
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def name(self) -> str:
        return "lnd"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.rest_url,
                timeout=self.timeout,
                verify=self.verify,
                headers={"Grpc-Metadata-macaroon": self.macaroon_hex},
                transport=self._transport,
            )
        return self._http_client

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=json, params=params)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientIntegrationError(f"LND unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientIntegrationError(
                f"LND {method} {path} returned {response.status_code}"
            )
        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except (ValueError, AttributeError):
                detail = response.text
            if response.status_code == 404:
                raise UnknownInvoiceError(f"LND has no record for {path}: {detail}")
            raise PermanentIntegrationError(f"LND rejected {method} {path}: {detail}")

        logger.debug(f"LND {method} {path} -> {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise TransientIntegrationError(f"LND {method} {path} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise TransientIntegrationError(f"LND {method} {path} returned an unexpected body")
        return data

    async def create_invoice(
        self, amount_sats: int, description: str, expiry_seconds: int
    ) -> LightningInvoice:
        created = utcnow()
        data = await self._request(
            "POST",
            "/v1/invoices",
            json={"value": str(amount_sats), "memo": description, "expiry": str(expiry_seconds)},
        )
        payment_hash = _b64_to_hex(data.get("r_hash", ""))
        if not payment_hash or not data.get("payment_request"):
            raise PermanentIntegrationError("LND returned an incomplete invoice")

        return LightningInvoice(
            payment_request=data["payment_request"],
            payment_hash=payment_hash,
            amount=amount_sats,
            expires_at=created + timedelta(seconds=expiry_seconds),
            description=description,
        )

    async def lookup_invoice(self, payment_hash: str) -> InvoiceStatus:
        data = await self._request("GET", f"/v1/invoice/{payment_hash}")
        state = data.get("state", "OPEN")
        is_paid = state == "SETTLED"

        paid_at = None
        settle_date = int(data.get("settle_date") or 0)
        if is_paid and settle_date:
            paid_at = datetime.fromtimestamp(settle_date, tz=timezone.utc)

        return InvoiceStatus(
            payment_hash=payment_hash,
            is_paid=is_paid,
            amount_paid=int(data.get("amt_paid_sat") or 0),
            paid_at=paid_at,
            is_cancelled=state == "CANCELED",
        )

    async def decode_invoice(self, payment_request: str) -> DecodedInvoice:
        data = await self._request("GET", f"/v1/payreq/{payment_request}")
        if not data.get("payment_hash"):
            raise PermanentIntegrationError("LND returned an incomplete decoded invoice")

        timestamp = int(data.get("timestamp") or 0)
        expiry = int(data.get("expiry") or DEFAULT_INVOICE_EXPIRY)
        return DecodedInvoice(
            payment_request=payment_request,
            payment_hash=data["payment_hash"],
            amount=int(data.get("num_satoshis") or 0) or None,
            expires_at=datetime.fromtimestamp(timestamp + expiry, tz=timezone.utc),
            description=data.get("description") or None,
        )

    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        data = await self._request(
            "POST", "/v1/channels/transactions", json={"payment_request": payment_request}
        )
        if data.get("payment_error"):
            raise PermanentIntegrationError(f"Payment failed: {data['payment_error']}")

        route = data.get("payment_route") or {}
        return PaymentResult(
            payment_hash=_b64_to_hex(data.get("payment_hash", "")),
            preimage=_b64_to_hex(data.get("payment_preimage", "")),
            fee_paid=int(route.get("total_fees") or 0),
        )

    async def lookup_payment(self, payment_hash: str) -> PaymentResult:
        data = await self._request(
            "GET",
            "/v1/payments",
            params={
                "include_incomplete": "true",
                "reversed": "true",
                "max_payments": str(PAYMENT_SCAN_LIMIT),
            },
        )
        attempts = [p for p in data.get("payments", []) if p.get("payment_hash") == payment_hash]

        for payment in attempts:
            if payment.get("status") == "SUCCEEDED":
                return PaymentResult(
                    payment_hash=payment_hash,
                    preimage=payment.get("payment_preimage", ""),
                    fee_paid=int(payment.get("fee_sat") or 0),
                    state=PaymentState.SUCCEEDED,
                )
        if any(p.get("status") in IN_FLIGHT_STATUSES for p in attempts):
            return PaymentResult(payment_hash=payment_hash, state=PaymentState.IN_FLIGHT)
        if attempts:
            return PaymentResult(payment_hash=payment_hash, state=PaymentState.FAILED)
        return PaymentResult(payment_hash=payment_hash, state=PaymentState.UNKNOWN)

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
