"""Helpers shared by the EventKampus tests."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi.testclient import TestClient

from eventkampus.config import Settings
from eventkampus.errors import PaymentGatewayError
from eventkampus.payments import CustomerDetails, LineItem, PaymentGateway, PaymentSession

SERVER_KEY = "SB-Mid-server-test-key"
PASSWORD = "Passw0rd"


class FakeGateway(PaymentGateway):
    """Records payment requests instead of calling Midtrans."""

    def __init__(
        self,
        *,
        fail: bool = False,
        delay: float = 0.0,
        release: Optional[threading.Event] = None,
    ) -> None:
        self.fail = fail
        self.delay = delay
        self.release = release
        self.started = threading.Event()
        self.calls: List[Dict[str, Any]] = []

    def create_transaction(
        self,
        *,
        order_id: str,
        amount: int,
        customer: CustomerDetails,
        items: List[LineItem],
    ) -> PaymentSession:
        self.calls.append({"order_id": order_id, "amount": amount, "customer": customer, "items": items})
        self.started.set()
        if self.release is not None:
            self.release.wait(timeout=10)
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise PaymentGatewayError("Payment gateway request failed with status 500")
        return PaymentSession(
            order_id=order_id,
            token=f"snap-token-{order_id}",
            redirect_url=f"https://app.sandbox.midtrans.com/snap/v2/vtweb/snap-token-{order_id}",
        )

    def get_status(self, order_id: str) -> Dict[str, Any]:
        return {"order_id": order_id, "transaction_status": "pending"}


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "db_path": tmp_path / "eventkampus.sqlite3",
        "jwt_secret": "test-access-secret-that-is-long-enough-123",
        "jwt_refresh_secret": "test-refresh-secret-that-is-long-enough-456",
        "midtrans_server_key": SERVER_KEY,
        "auth_rate_limit": 1000,
        "general_rate_limit": 1000,
    }
    values.update(overrides)
    return Settings(**values)


def auth_header(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def register_and_login(
    client: TestClient,
    email: str,
    display_name: str,
    role: Optional[str] = None,
    password: str = PASSWORD,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"email": email, "password": password, "display_name": display_name}
    if role is not None:
        body["role"] = role
    created = client.post("/api/auth/register", json=body)
    assert created.status_code == 201, created.text
    login = client.post("/api/auth/login", json={"email": email, "password": password})
    assert login.status_code == 200, login.text
    return login.json()
