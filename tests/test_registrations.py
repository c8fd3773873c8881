from __future__ import annotations

import threading
import unittest
from datetime import datetime, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import List

from eventkampus.database import Database
from eventkampus.errors import (
    AuthError,
    CapacityError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentGatewayError,
    ValidationError,
)
from eventkampus.models import PaymentStatus, Principal, Role
from eventkampus.payments import PaymentReconciler, compute_notification_signature, parse_order_id
from eventkampus.registrations import RegistrationService, generate_redemption_code

from support import SERVER_KEY, FakeGateway


def _principal(user) -> Principal:
    return Principal(user_id=user.id, email=user.email, role=user.role)


EVENT_DATA = {
    "name": "TechFest",
    "description": "A festival of campus technology",
    "location": "Main Hall",
    "start_time": "2026-11-01T09:00:00Z",
}


class RegistrationServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "eventkampus.sqlite3"
        self.database = Database(self.db_path)
        self.database.initialize()
        self.gateway = FakeGateway()
        self.service = RegistrationService(self.database, self.gateway)

        self.organizer = _principal(
            self.database.create_user("acme@example.com", "Passw0rd", "Acme Org", Role.ORGANIZATION)
        )
        self.other_organizer = _principal(
            self.database.create_user("rival@example.com", "Passw0rd", "Rival Org", Role.ORGANIZATION)
        )
        self.alice = _principal(self.database.create_user("alice@example.com", "Passw0rd", "Alice"))
        self.bob = _principal(self.database.create_user("bob@example.com", "Passw0rd", "Bob"))

        self.event = self.service.create_event(self.organizer, EVENT_DATA)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _ticket(self, *, name: str = "Regular", price: int = 0, quota: int = 10):
        return self.service.add_ticket_type(
            self.organizer, self.event.id, {"name": name, "price": price, "quota": quota}
        )

    def _registration_count(self) -> int:
        with self.database.connection() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM registrations").fetchone()[0])

    def _only_registration(self):
        with self.database.connection() as conn:
            row = conn.execute("SELECT id FROM registrations").fetchone()
        return self.database.get_registration(int(row["id"]))

    # ------------------------------------------------------------ catalog
    def test_attendee_cannot_create_event(self) -> None:
        with self.assertRaises(ForbiddenError):
            self.service.create_event(self.alice, EVENT_DATA)

    def test_create_event_validates_fields(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.service.create_event(
                self.organizer,
                {
                    "name": "TF",
                    "description": "short",
                    "location": "",
                    "start_time": "2026-11-01T09:00:00Z",
                    "end_time": "2026-10-01T09:00:00Z",
                },
            )
        errors = ctx.exception.errors
        self.assertIn("Event name must be 3-200 characters", errors)
        self.assertIn("Description must be at least 10 characters", errors)
        self.assertIn("Location is required", errors)
        self.assertIn("End time must not be before start time", errors)

    def test_create_event_rejects_bad_timestamp(self) -> None:
        data = dict(EVENT_DATA, start_time="next tuesday")
        with self.assertRaises(ValidationError):
            self.service.create_event(self.organizer, data)

    def test_get_event_returns_ticket_types_cheapest_first(self) -> None:
        self._ticket(name="VIP Pass", price=150000)
        self._ticket(name="Free Entry", price=0)

        event, tickets = self.service.get_event(self.event.id)

        self.assertEqual(event.organizer_name, "Acme Org")
        self.assertEqual([ticket.name for ticket in tickets], ["Free Entry", "VIP Pass"])
        with self.assertRaises(NotFoundError):
            self.service.get_event(self.event.id + 100)

    def test_add_ticket_type_requires_ownership_and_valid_values(self) -> None:
        with self.assertRaises(ForbiddenError):
            self.service.add_ticket_type(
                self.other_organizer, self.event.id, {"name": "Regular", "price": 0, "quota": 5}
            )
        with self.assertRaises(NotFoundError):
            self.service.add_ticket_type(
                self.organizer, self.event.id + 100, {"name": "Regular", "price": 0, "quota": 5}
            )
        with self.assertRaises(ValidationError) as ctx:
            self.service.add_ticket_type(
                self.organizer, self.event.id, {"name": "Regular", "price": -1, "quota": 0}
            )
        self.assertIn("Price must be at least 0", ctx.exception.errors)
        self.assertIn("Quota must be at least 1", ctx.exception.errors)

    def test_list_my_events_only_returns_own_events(self) -> None:
        self.service.create_event(self.other_organizer, dict(EVENT_DATA, name="Rival Fest"))

        events = self.service.list_my_events(self.organizer)

        self.assertEqual([event.id for event in events], [self.event.id])
        with self.assertRaises(ForbiddenError):
            self.service.list_my_events(self.alice)

    # ------------------------------------------------------- registration
    def test_free_ticket_is_paid_without_gateway(self) -> None:
        ticket = self._ticket(price=0)

        result = self.service.register(self.alice, self.event.id, ticket.id)

        self.assertTrue(result.is_free)
        self.assertIsNone(result.payment_token)
        self.assertEqual(result.registration.payment_status, PaymentStatus.PAID)
        self.assertTrue(result.registration.redemption_code.startswith("EK-"))
        self.assertEqual(self.gateway.calls, [])

    def test_paid_ticket_opens_payment_session(self) -> None:
        ticket = self._ticket(name="VIP Pass", price=150000)

        result = self.service.register(self.alice, self.event.id, ticket.id)

        self.assertFalse(result.is_free)
        self.assertEqual(result.registration.payment_status, PaymentStatus.PENDING)
        self.assertIsNotNone(result.payment_token)
        self.assertEqual(parse_order_id(result.order_id), result.registration.id)
        self.assertEqual(len(self.gateway.calls), 1)
        call = self.gateway.calls[0]
        self.assertEqual(call["amount"], 150000)
        self.assertEqual(call["customer"].email, "alice@example.com")
        self.assertEqual(call["items"][0].name, "TechFest - VIP Pass")

    def test_gateway_failure_cancels_registration_and_frees_seat(self) -> None:
        ticket = self._ticket(price=50000, quota=1)
        self.gateway.fail = True

        with self.assertRaises(PaymentGatewayError):
            self.service.register(self.alice, self.event.id, ticket.id)

        registration = self._only_registration()
        self.assertEqual(registration.payment_status, PaymentStatus.CANCELLED)

        self.gateway.fail = False
        retry = self.service.register(self.alice, self.event.id, ticket.id)
        self.assertEqual(retry.registration.id, registration.id)
        self.assertEqual(retry.registration.payment_status, PaymentStatus.PENDING)
        self.assertNotEqual(retry.registration.redemption_code, registration.redemption_code)
        self.assertEqual(retry.order_id, retry.registration.order_id)
        self.assertEqual(self._registration_count(), 1)

    def test_gateway_call_does_not_hold_the_write_lock(self) -> None:
        ticket = self._ticket(price=50000)
        release = threading.Event()
        self.gateway.release = release
        results: List[object] = []

        worker = threading.Thread(
            target=lambda: results.append(self.service.register(self.alice, self.event.id, ticket.id))
        )
        worker.start()
        try:
            self.assertTrue(self.gateway.started.wait(timeout=10))
            order_id = self.gateway.calls[0]["order_id"]
            impatient = Database(self.db_path, timeout=0.5)
            notification = {
                "order_id": order_id,
                "status_code": "200",
                "gross_amount": "50000.00",
                "transaction_status": "settlement",
            }
            notification["signature_key"] = compute_notification_signature(
                order_id, "200", "50000.00", SERVER_KEY
            )

            outcome = PaymentReconciler(impatient, SERVER_KEY).handle_notification(notification)
            impatient.create_event(
                self.organizer.user_id,
                name="Another Fest",
                description="Written while the gateway is still answering",
                poster_url=None,
                start_time=datetime(2026, 12, 1, tzinfo=timezone.utc),
                end_time=None,
                location="Annex",
            )
        finally:
            release.set()
            worker.join(timeout=30)

        self.assertEqual(outcome.result, "updated")
        self.assertEqual(len(results), 1)
        self.assertEqual(self._only_registration().payment_status, PaymentStatus.PAID)

    def test_sold_out_ticket_creates_no_row(self) -> None:
        ticket = self._ticket(quota=1)
        self.service.register(self.alice, self.event.id, ticket.id)

        with self.assertRaises(CapacityError):
            self.service.register(self.bob, self.event.id, ticket.id)

        self.assertEqual(self._registration_count(), 1)

    def test_second_registration_for_same_event_conflicts(self) -> None:
        regular = self._ticket(name="Regular")
        vip = self._ticket(name="VIP Pass", price=100000)
        self.service.register(self.alice, self.event.id, regular.id)

        with self.assertRaises(ConflictError):
            self.service.register(self.alice, self.event.id, regular.id)
        with self.assertRaises(ConflictError):
            self.service.register(self.alice, self.event.id, vip.id)

    def test_ticket_type_from_another_event_is_rejected(self) -> None:
        other_event = self.service.create_event(self.organizer, dict(EVENT_DATA, name="Other Fest"))
        ticket = self._ticket()

        with self.assertRaises(NotFoundError):
            self.service.register(self.alice, other_event.id, ticket.id)

    def test_register_with_deleted_account_is_rejected(self) -> None:
        ticket = self._ticket()
        ghost = Principal(user_id=9999, email="ghost@example.com", role=Role.ATTENDEE)

        with self.assertRaises(AuthError):
            self.service.register(ghost, self.event.id, ticket.id)

    def test_concurrent_registrations_never_oversell(self) -> None:
        ticket = self._ticket(name="Last Seat", price=25000, quota=1)
        self.gateway.delay = 0.2
        barrier = threading.Barrier(2)
        successes: List[int] = []
        failures: List[Exception] = []
        lock = threading.Lock()

        def attempt(principal: Principal) -> None:
            barrier.wait()
            try:
                result = self.service.register(principal, self.event.id, ticket.id)
            except Exception as exc:  # collected for assertions below
                with lock:
                    failures.append(exc)
            else:
                with lock:
                    successes.append(result.registration.user_id)

        threads = [threading.Thread(target=attempt, args=(p,)) for p in (self.alice, self.bob)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(len(successes), 1)
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], CapacityError)
        self.assertEqual(self._registration_count(), 1)

    # --------------------------------------------------- ledger management
    def test_confirm_payment_is_idempotent(self) -> None:
        ticket = self._ticket(price=75000)
        result = self.service.register(self.alice, self.event.id, ticket.id)

        first = self.service.confirm_payment(self.organizer, result.registration.id)
        second = self.service.confirm_payment(self.organizer, result.registration.id)

        self.assertEqual(first.payment_status, PaymentStatus.PAID)
        self.assertEqual(second.payment_status, PaymentStatus.PAID)
        self.assertEqual(first.updated_at, second.updated_at)

    def test_cancelled_registration_cannot_be_confirmed(self) -> None:
        ticket = self._ticket(price=75000, quota=1)
        alice = self.service.register(self.alice, self.event.id, ticket.id)
        self.assertTrue(
            self.database.transition_registration_status(
                alice.registration.id, expected=PaymentStatus.PENDING, new=PaymentStatus.CANCELLED
            )
        )
        self.service.register(self.bob, self.event.id, ticket.id)

        with self.assertRaises(ConflictError):
            self.service.confirm_payment(self.organizer, alice.registration.id)

        cancelled = self.database.get_registration(alice.registration.id)
        self.assertEqual(cancelled.payment_status, PaymentStatus.CANCELLED)
        with self.database.connection() as conn:
            live = conn.execute(
                "SELECT COUNT(*) FROM registrations WHERE ticket_type_id = ? AND payment_status != ?",
                (ticket.id, PaymentStatus.CANCELLED.value),
            ).fetchone()[0]
        self.assertLessEqual(live, ticket.quota)

    def test_confirm_payment_requires_event_owner(self) -> None:
        ticket = self._ticket(price=75000)
        result = self.service.register(self.alice, self.event.id, ticket.id)

        with self.assertRaises(ForbiddenError):
            self.service.confirm_payment(self.other_organizer, result.registration.id)
        with self.assertRaises(ForbiddenError):
            self.service.confirm_payment(self.alice, result.registration.id)
        with self.assertRaises(NotFoundError):
            self.service.confirm_payment(self.organizer, result.registration.id + 100)

    def test_list_attendees_for_owner(self) -> None:
        ticket = self._ticket(name="Free Entry")
        self.service.register(self.alice, self.event.id, ticket.id)
        self.service.register(self.bob, self.event.id, ticket.id)

        attendees = self.service.list_attendees(self.organizer, self.event.id)

        self.assertEqual([a.email for a in attendees], ["alice@example.com", "bob@example.com"])
        self.assertTrue(all(a.payment_status == PaymentStatus.PAID for a in attendees))
        with self.assertRaises(ForbiddenError):
            self.service.list_attendees(self.other_organizer, self.event.id)

    def test_my_registrations_is_attendee_only(self) -> None:
        ticket = self._ticket(name="Free Entry")
        self.service.register(self.alice, self.event.id, ticket.id)

        summaries = self.service.list_my_registrations(self.alice)

        self.assertEqual(len(summaries), 1)
        self.assertEqual(summaries[0].event_name, "TechFest")
        self.assertEqual(summaries[0].ticket_name, "Free Entry")
        self.assertEqual(self.service.list_my_registrations(self.bob), [])
        with self.assertRaises(ForbiddenError):
            self.service.list_my_registrations(self.organizer)

    def test_payment_status_is_visible_to_attendee_and_organizer_only(self) -> None:
        ticket = self._ticket(price=75000)
        result = self.service.register(self.alice, self.event.id, ticket.id)

        self.assertEqual(
            self.service.payment_status(self.alice, result.order_id)["order_id"], result.order_id
        )
        self.service.payment_status(self.organizer, result.order_id)
        with self.assertRaises(ForbiddenError):
            self.service.payment_status(self.bob, result.order_id)
        with self.assertRaises(NotFoundError):
            self.service.payment_status(self.alice, "not-an-order")


def test_redemption_codes_are_unique() -> None:
    codes = {generate_redemption_code() for _ in range(200)}
    assert len(codes) == 200
    assert all(code.startswith("EK-") for code in codes)
