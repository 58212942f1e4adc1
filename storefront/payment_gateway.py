"""
Payment gateway contracts and the Razorpay REST adapter.
"""
import hmac
import hashlib
import logging
from typing import Dict, Optional, Protocol

import httpx

from storefront.config import Config
from storefront.exceptions import GatewayUnavailableError, PaymentGatewayError
from storefront.models import GatewayOrder, PaymentHandoff, PaymentOutcome

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """Server-side operations of the payment gateway."""

    def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None
    ) -> GatewayOrder:
        """Create a remote order for ``amount`` minor units.

        Raises:
            PaymentGatewayError: The gateway rejected the request
            GatewayUnavailableError: No definitive answer (timeout, network, 5xx)
        """
        ...

    def verify_signature(self, payment_id: str, gateway_order_id: str, signature: str) -> bool:
        """Return True if the checkout's signature matches the gateway order."""
        ...

    @property
    def key_id(self) -> str:
        ...


class CheckoutUI(Protocol):
    """The gateway's interactive checkout, opened on the customer's device."""

    def open(self, handoff: PaymentHandoff) -> PaymentOutcome:
        """Run the checkout and return its outcome.

        Raises:
            PaymentCancelledError: The customer dismissed the checkout
            PaymentDeclinedError: The gateway reported a failed payment
            GatewayUnavailableError: The outcome never arrived
        """
        ...


class RazorpayGateway:
    """Razorpay orders API over httpx"""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self._key_id = key_id if key_id is not None else Config.RAZORPAY_KEY_ID
        self._key_secret = key_secret if key_secret is not None else (Config.RAZORPAY_KEY_SECRET or "")
        self.client = httpx.Client(
            base_url=base_url or Config.RAZORPAY_BASE_URL,
            auth=(self._key_id, self._key_secret),
            timeout=timeout or Config.GATEWAY_TIMEOUT_SECONDS,
            transport=transport
        )

    @property
    def key_id(self) -> str:
        return self._key_id

    def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None
    ) -> GatewayOrder:
        payload = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }

        try:
            response = self.client.post("/v1/orders", json=payload)
        except httpx.TimeoutException as e:
            raise GatewayUnavailableError(f"Payment gateway timed out: {e}")
        except httpx.TransportError as e:
            raise GatewayUnavailableError(f"Payment gateway unreachable: {e}")

        if response.status_code >= 500:
            raise GatewayUnavailableError(
                f"Payment gateway returned {response.status_code}"
            )

        if response.status_code >= 400:
            description = "Failed to create order"
            try:
                description = response.json().get("error", {}).get("description") or description
            except ValueError:
                pass  # Non-JSON error body
            logger.warning(
                "Gateway rejected order creation",
                extra={"status_code": response.status_code, "receipt": receipt}
            )
            raise PaymentGatewayError(description)

        data = response.json()
        return GatewayOrder(
            id=data["id"],
            amount=data.get("amount", amount),
            currency=data.get("currency", currency),
            receipt=data.get("receipt", receipt),
            status=data.get("status")
        )

    def verify_signature(self, payment_id: str, gateway_order_id: str, signature: str) -> bool:
        if not (payment_id and gateway_order_id and signature and self._key_secret):
            return False
        message = f"{gateway_order_id}|{payment_id}".encode()
        expected = hmac.new(self._key_secret.encode(), message, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)

    def close(self):
        self.client.close()
