from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict

import httpx
import pytest

from eventkampus.database import Database
from eventkampus.errors import PaymentGatewayError, UpstreamTimeoutError
from eventkampus.models import PaymentStatus, Role
from eventkampus.payments import (
    CustomerDetails,
    LineItem,
    MidtransGateway,
    PaymentReconciler,
    build_order_id,
    compute_notification_signature,
    is_transition_allowed,
    map_gateway_status,
    parse_order_id,
    verify_notification_signature,
)

from support import SERVER_KEY


def _notification(order_id: str, transaction_status: str, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "order_id": order_id,
        "status_code": "200",
        "gross_amount": "150000.00",
        "transaction_status": transaction_status,
    }
    payload.update(extra)
    payload["signature_key"] = compute_notification_signature(
        payload["order_id"], payload["status_code"], payload["gross_amount"], SERVER_KEY
    )
    return payload


@pytest.fixture()
def pending_registration(database: Database):
    organizer = database.create_user("acme@example.com", "Passw0rd", "Acme Org", Role.ORGANIZATION)
    attendee = database.create_user("alice@example.com", "Passw0rd", "Alice")
    event = database.create_event(
        organizer.id,
        name="TechFest",
        description="A festival of campus technology",
        poster_url=None,
        start_time=datetime(2026, 11, 1, 9, 0, tzinfo=timezone.utc),
        end_time=None,
        location="Main Hall",
    )
    ticket = database.create_ticket_type(event.id, name="VIP Pass", price=150000, quota=5)
    with database.reserve_seat(
        user_id=attendee.id, event_id=event.id, ticket_type_id=ticket.id, redemption_code="EK-pending"
    ) as reservation:
        registration = reservation.attach_order(build_order_id(reservation.registration.id))
    return registration


@pytest.fixture()
def reconciler(database: Database) -> PaymentReconciler:
    return PaymentReconciler(database, SERVER_KEY)


def test_order_id_round_trip() -> None:
    order_id = build_order_id(42, now_ms=1730000000000)
    assert order_id == "ORDER-42-1730000000000"
    assert parse_order_id(order_id) == 42


@pytest.mark.parametrize("order_id", ["", "ORDER-42", "INV-42-1", "ORDER-x-1", "ORDER-1-2-3"])
def test_parse_order_id_rejects_foreign_ids(order_id: str) -> None:
    with pytest.raises(ValueError):
        parse_order_id(order_id)


@pytest.mark.parametrize(
    ("transaction_status", "fraud_status", "expected"),
    [
        ("capture", "accept", PaymentStatus.PAID),
        ("capture", "challenge", None),
        ("settlement", None, PaymentStatus.PAID),
        ("pending", None, PaymentStatus.PENDING),
        ("cancel", None, PaymentStatus.CANCELLED),
        ("deny", None, PaymentStatus.CANCELLED),
        ("expire", None, PaymentStatus.CANCELLED),
        ("refund", None, None),
        (None, None, None),
    ],
)
def test_map_gateway_status(transaction_status, fraud_status, expected) -> None:
    assert map_gateway_status(transaction_status, fraud_status) == expected


def test_only_pending_registrations_may_transition() -> None:
    assert is_transition_allowed(PaymentStatus.PENDING, PaymentStatus.PAID)
    assert is_transition_allowed(PaymentStatus.PENDING, PaymentStatus.CANCELLED)
    assert not is_transition_allowed(PaymentStatus.PAID, PaymentStatus.CANCELLED)
    assert not is_transition_allowed(PaymentStatus.CANCELLED, PaymentStatus.PAID)
    assert not is_transition_allowed(PaymentStatus.PAID, PaymentStatus.PENDING)


def test_signature_verification() -> None:
    payload = _notification("ORDER-1-1", "settlement")

    assert verify_notification_signature(payload, SERVER_KEY)
    assert not verify_notification_signature(payload, "another-key")
    assert not verify_notification_signature(payload, "")
    assert not verify_notification_signature(dict(payload, gross_amount="1.00"), SERVER_KEY)
    assert not verify_notification_signature({k: v for k, v in payload.items() if k != "signature_key"}, SERVER_KEY)


def test_settlement_marks_registration_paid(database: Database, reconciler, pending_registration) -> None:
    order_id = pending_registration.order_id

    outcome = reconciler.handle_notification(_notification(order_id, "settlement"))

    assert outcome.result == "updated"
    assert outcome.new_status is PaymentStatus.PAID
    assert database.get_registration(pending_registration.id).payment_status is PaymentStatus.PAID


def test_expire_cancels_and_later_settlement_is_ignored(database: Database, reconciler, pending_registration) -> None:
    order_id = pending_registration.order_id

    assert reconciler.handle_notification(_notification(order_id, "expire")).result == "updated"
    late = reconciler.handle_notification(_notification(order_id, "settlement"))

    assert late.result == "ignored"
    assert database.get_registration(pending_registration.id).payment_status is PaymentStatus.CANCELLED


def test_repeated_notification_is_unchanged(database: Database, reconciler, pending_registration) -> None:
    order_id = pending_registration.order_id
    reconciler.handle_notification(_notification(order_id, "settlement"))

    again = reconciler.handle_notification(_notification(order_id, "settlement"))

    assert again.result == "unchanged"
    assert database.get_registration(pending_registration.id).payment_status is PaymentStatus.PAID


def test_capture_under_fraud_review_does_not_change_ledger(database: Database, reconciler, pending_registration) -> None:
    order_id = pending_registration.order_id

    outcome = reconciler.handle_notification(_notification(order_id, "capture", fraud_status="challenge"))

    assert outcome.result == "unchanged"
    assert database.get_registration(pending_registration.id).payment_status is PaymentStatus.PENDING


def test_forged_notification_is_rejected(database: Database, reconciler, pending_registration) -> None:
    payload = _notification(pending_registration.order_id, "settlement")
    payload["signature_key"] = "0" * 128

    assert reconciler.handle_notification(payload).result == "rejected"
    assert database.get_registration(pending_registration.id).payment_status is PaymentStatus.PENDING


def test_stale_order_id_is_ignored(database: Database, reconciler, pending_registration) -> None:
    stale = build_order_id(pending_registration.id, now_ms=1)

    outcome = reconciler.handle_notification(_notification(stale, "settlement"))

    assert outcome.result == "ignored"
    assert database.get_registration(pending_registration.id).payment_status is PaymentStatus.PENDING


def test_unknown_orders_are_ignored(reconciler) -> None:
    assert reconciler.handle_notification(_notification("INV-1", "settlement")).result == "ignored"
    assert reconciler.handle_notification(_notification("ORDER-999-1", "settlement")).result == "ignored"


def _gateway(handler) -> MidtransGateway:
    return MidtransGateway(SERVER_KEY, transport=httpx.MockTransport(handler))


def test_midtrans_create_transaction_sends_snap_payload() -> None:
    seen: Dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"token": "snap-abc", "redirect_url": "https://pay/snap-abc"})

    session = _gateway(handler).create_transaction(
        order_id="ORDER-7-1",
        amount=150000,
        customer=CustomerDetails(email="alice@example.com", first_name="Alice"),
        items=[LineItem(id="3", name="TechFest - VIP Pass", price=150000)],
    )

    assert session.token == "snap-abc"
    assert session.redirect_url == "https://pay/snap-abc"
    assert seen["url"] == "https://app.sandbox.midtrans.com/snap/v1/transactions"
    assert seen["auth"].startswith("Basic ")
    assert seen["body"]["transaction_details"] == {"order_id": "ORDER-7-1", "gross_amount": 150000}
    assert seen["body"]["item_details"][0]["quantity"] == 1


def test_midtrans_error_status_raises_gateway_error() -> None:
    gateway = _gateway(lambda request: httpx.Response(401, json={"error_messages": ["unauthorized"]}))

    with pytest.raises(PaymentGatewayError):
        gateway.get_status("ORDER-7-1")


def test_midtrans_missing_token_raises_gateway_error() -> None:
    gateway = _gateway(lambda request: httpx.Response(201, json={}))

    with pytest.raises(PaymentGatewayError):
        gateway.create_transaction(
            order_id="ORDER-7-1",
            amount=1000,
            customer=CustomerDetails(email="alice@example.com", first_name="Alice"),
            items=[],
        )


def test_midtrans_timeout_raises_upstream_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(UpstreamTimeoutError):
        _gateway(handler).get_status("ORDER-7-1")


def test_midtrans_requires_server_key() -> None:
    gateway = MidtransGateway("", transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))

    with pytest.raises(PaymentGatewayError):
        gateway.get_status("ORDER-7-1")


def test_production_flag_switches_hosts() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["host"] = request.url.host
        return httpx.Response(200, json={"transaction_status": "settlement"})

    gateway = MidtransGateway(SERVER_KEY, is_production=True, transport=httpx.MockTransport(handler))
    assert gateway.get_status("ORDER-7-1")["transaction_status"] == "settlement"
    assert seen["host"] == "api.midtrans.com"
