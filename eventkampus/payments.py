"""Payment gateway client and webhook reconciliation for paid registrations."""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .database import Database
from .errors import PaymentGatewayError, UpstreamTimeoutError
from .models import PaymentStatus

logger = logging.getLogger("eventkampus.payments")

SNAP_SANDBOX_URL = "https://app.sandbox.midtrans.com"
SNAP_PRODUCTION_URL = "https://app.midtrans.com"
CORE_SANDBOX_URL = "https://api.sandbox.midtrans.com"
CORE_PRODUCTION_URL = "https://api.midtrans.com"

_ORDER_PREFIX = "ORDER"

_ALLOWED_TRANSITIONS = {
    (PaymentStatus.PENDING, PaymentStatus.PAID),
    (PaymentStatus.PENDING, PaymentStatus.CANCELLED),
}


@dataclass(frozen=True)
class CustomerDetails:
    email: str
    first_name: str


@dataclass(frozen=True)
class LineItem:
    id: str
    name: str
    price: int
    quantity: int = 1


@dataclass(frozen=True)
class PaymentSession:
    """Opaque token and redirect URL returned when a payment is opened."""

    order_id: str
    token: str
    redirect_url: Optional[str] = None


@dataclass
class NotificationOutcome:
    registration_id: Optional[int]
    result: str
    new_status: Optional[PaymentStatus] = None
    details: Dict[str, str] = field(default_factory=dict)


def build_order_id(registration_id: int, *, now_ms: Optional[int] = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{_ORDER_PREFIX}-{registration_id}-{stamp}"


def parse_order_id(order_id: str) -> int:
    """Return the registration id encoded in a gateway order id."""

    parts = order_id.split("-")
    if len(parts) != 3 or parts[0] != _ORDER_PREFIX:
        raise ValueError(f"Unrecognised order id '{order_id}'")
    return int(parts[1])


def compute_notification_signature(
    order_id: str,
    status_code: str,
    gross_amount: str,
    server_key: str,
) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}".encode("utf-8")
    return hashlib.sha512(raw).hexdigest()


def verify_notification_signature(payload: Mapping[str, Any], server_key: str) -> bool:
    """Check the ``signature_key`` the gateway attaches to every notification."""

    if not server_key:
        return False
    provided = payload.get("signature_key")
    if not isinstance(provided, str) or not provided:
        return False
    expected = compute_notification_signature(
        str(payload.get("order_id", "")),
        str(payload.get("status_code", "")),
        str(payload.get("gross_amount", "")),
        server_key,
    )
    return hmac.compare_digest(expected, provided)


def map_gateway_status(transaction_status: Optional[str], fraud_status: Optional[str]) -> Optional[PaymentStatus]:
    """Translate gateway transaction states into ledger states.

    Returns ``None`` when the notification should not change the ledger.
    """

    status = (transaction_status or "").strip().lower()
    fraud = (fraud_status or "").strip().lower()
    if status == "capture":
        return PaymentStatus.PAID if fraud == "accept" else None
    if status == "settlement":
        return PaymentStatus.PAID
    if status == "pending":
        return PaymentStatus.PENDING
    if status in {"cancel", "deny", "expire"}:
        return PaymentStatus.CANCELLED
    return None


def is_transition_allowed(current: PaymentStatus, new: PaymentStatus) -> bool:
    return (current, new) in _ALLOWED_TRANSITIONS


class PaymentGateway(ABC):
    """Interface for the external service that collects ticket payments."""

    @abstractmethod
    def create_transaction(
        self,
        *,
        order_id: str,
        amount: int,
        customer: CustomerDetails,
        items: List[LineItem],
    ) -> PaymentSession:
        ...

    @abstractmethod
    def get_status(self, order_id: str) -> Dict[str, Any]:
        ...


class MidtransGateway(PaymentGateway):
    """Midtrans Snap client using HTTP basic auth with the server key."""

    def __init__(
        self,
        server_key: str,
        *,
        is_production: bool = False,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._server_key = server_key
        self._snap_url = SNAP_PRODUCTION_URL if is_production else SNAP_SANDBOX_URL
        self._core_url = CORE_PRODUCTION_URL if is_production else CORE_SANDBOX_URL
        self._timeout = timeout
        self._transport = transport

    def create_transaction(
        self,
        *,
        order_id: str,
        amount: int,
        customer: CustomerDetails,
        items: List[LineItem],
    ) -> PaymentSession:
        payload = {
            "transaction_details": {"order_id": order_id, "gross_amount": amount},
            "credit_card": {"secure": True},
            "customer_details": {"email": customer.email, "first_name": customer.first_name},
            "item_details": [
                {"id": item.id, "price": item.price, "quantity": item.quantity, "name": item.name}
                for item in items
            ],
        }
        data = self._request("POST", f"{self._snap_url}/snap/v1/transactions", json=payload)
        token = data.get("token")
        if not isinstance(token, str) or not token:
            raise PaymentGatewayError("Payment gateway did not return a transaction token")
        return PaymentSession(order_id=order_id, token=token, redirect_url=data.get("redirect_url"))

    def get_status(self, order_id: str) -> Dict[str, Any]:
        return self._request("GET", f"{self._core_url}/v2/{order_id}/status")

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        if not self._server_key:
            raise PaymentGatewayError("Payment gateway is not configured")
        try:
            with httpx.Client(
                auth=(self._server_key, ""),
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            ) as client:
                response = client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("Payment gateway timed out on %s %s", method, url)
            raise UpstreamTimeoutError("Payment gateway timed out") from exc
        except httpx.RequestError as exc:
            logger.error("Failed to contact payment gateway: %s", exc)
            raise PaymentGatewayError("Failed to contact the payment gateway") from exc

        if response.status_code >= 400:
            logger.error(
                "Payment gateway request %s %s failed with status %s",
                method,
                url,
                response.status_code,
            )
            raise PaymentGatewayError(
                f"Payment gateway request failed with status {response.status_code}"
            )

        try:
            parsed = response.json()
        except ValueError as exc:
            raise PaymentGatewayError("Payment gateway returned an invalid response") from exc
        if not isinstance(parsed, dict):
            raise PaymentGatewayError("Payment gateway returned an invalid response")
        return parsed


class PaymentReconciler:
    """Apply asynchronous gateway notifications to the registration ledger."""

    def __init__(self, database: Database, server_key: str) -> None:
        self._db = database
        self._server_key = server_key

    def handle_notification(self, payload: Mapping[str, Any]) -> NotificationOutcome:
        order_id = str(payload.get("order_id") or "")
        transaction_status = payload.get("transaction_status")
        fraud_status = payload.get("fraud_status")

        if not verify_notification_signature(payload, self._server_key):
            logger.warning("Rejected payment notification for order %s: bad signature", order_id or "<none>")
            return NotificationOutcome(registration_id=None, result="rejected")

        try:
            registration_id = parse_order_id(order_id)
        except ValueError:
            logger.warning("Ignoring payment notification with unknown order id %s", order_id)
            return NotificationOutcome(registration_id=None, result="ignored")

        logger.info(
            "Payment notification for order %s: status=%s fraud=%s",
            order_id,
            transaction_status,
            fraud_status,
        )

        new_status = map_gateway_status(
            str(transaction_status) if transaction_status is not None else None,
            str(fraud_status) if fraud_status is not None else None,
        )
        if new_status is None:
            logger.info("No ledger change for order %s (status=%s)", order_id, transaction_status)
            return NotificationOutcome(registration_id=registration_id, result="unchanged")

        registration = self._db.get_registration(registration_id)
        if registration is None:
            logger.warning("Payment notification references missing registration %s", registration_id)
            return NotificationOutcome(registration_id=registration_id, result="ignored")
        if registration.order_id != order_id:
            logger.warning(
                "Ignoring payment notification for stale order %s of registration %s",
                order_id,
                registration_id,
            )
            return NotificationOutcome(registration_id=registration_id, result="ignored")

        current = registration.payment_status
        if current == new_status:
            return NotificationOutcome(registration_id=registration_id, result="unchanged", new_status=current)

        if not is_transition_allowed(current, new_status):
            logger.warning(
                "Ignoring illegal transition %s -> %s for registration %s",
                current.value,
                new_status.value,
                registration_id,
            )
            return NotificationOutcome(registration_id=registration_id, result="ignored", new_status=current)

        applied = self._db.transition_registration_status(registration_id, expected=current, new=new_status)
        if not applied:
            logger.warning(
                "Registration %s changed state concurrently; notification for order %s not applied",
                registration_id,
                order_id,
            )
            return NotificationOutcome(registration_id=registration_id, result="ignored")

        logger.info("Registration %s updated to %s", registration_id, new_status.value)
        return NotificationOutcome(registration_id=registration_id, result="updated", new_status=new_status)


__all__ = [
    "CustomerDetails",
    "LineItem",
    "MidtransGateway",
    "NotificationOutcome",
    "PaymentGateway",
    "PaymentReconciler",
    "PaymentSession",
    "build_order_id",
    "compute_notification_signature",
    "is_transition_allowed",
    "map_gateway_status",
    "parse_order_id",
    "verify_notification_signature",
]
