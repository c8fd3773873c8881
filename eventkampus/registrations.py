"""Event catalog and ticket registration operations."""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .auth import sanitize_text
from .database import Database
from .errors import AuthError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from .models import (
    Attendee,
    Event,
    PaymentStatus,
    Principal,
    Registration,
    RegistrationSummary,
    Role,
    TicketType,
    User,
)
from .payments import CustomerDetails, LineItem, PaymentGateway, build_order_id, parse_order_id
from .security import authorize

logger = logging.getLogger("eventkampus.registrations")

REDEMPTION_CODE_PREFIX = "EK-"


def generate_redemption_code() -> str:
    return REDEMPTION_CODE_PREFIX + secrets.token_urlsafe(18)


def _parse_timestamp(value: object, label: str, errors: List[str]) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            errors.append(f"{label} is not a valid ISO-8601 timestamp")
            return None
    else:
        errors.append(f"{label} is not a valid ISO-8601 timestamp")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_int(value: object, label: str, minimum: int, errors: List[str]) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{label} must be an integer")
        return minimum
    if value < minimum:
        errors.append(f"{label} must be at least {minimum}")
    return value


@dataclass(frozen=True)
class RegistrationResult:
    registration: Registration
    is_free: bool
    payment_token: Optional[str] = None
    payment_url: Optional[str] = None
    order_id: Optional[str] = None


class RegistrationService:
    """Catalog management and the registration ledger."""

    def __init__(self, database: Database, gateway: PaymentGateway) -> None:
        self._db = database
        self._gateway = gateway

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    def list_events(self) -> List[Event]:
        return self._db.list_events()

    def get_event(self, event_id: int) -> tuple[Event, List[TicketType]]:
        event = self._db.get_event(event_id)
        if event is None:
            raise NotFoundError("Event not found")
        return event, self._db.list_ticket_types(event_id)

    def create_event(self, principal: Principal, data: Mapping[str, Any]) -> Event:
        authorize({Role.ORGANIZATION}, principal)

        errors: List[str] = []
        name = sanitize_text(str(data.get("name") or ""))
        if not 3 <= len(name) <= 200:
            errors.append("Event name must be 3-200 characters")
        description = sanitize_text(str(data.get("description") or ""))
        if len(description) < 10:
            errors.append("Description must be at least 10 characters")
        location = sanitize_text(str(data.get("location") or ""))
        if not location:
            errors.append("Location is required")

        start_time = _parse_timestamp(data.get("start_time"), "Start time", errors)
        end_time: Optional[datetime] = None
        if data.get("end_time") not in (None, ""):
            end_time = _parse_timestamp(data.get("end_time"), "End time", errors)
            if start_time is not None and end_time is not None and end_time < start_time:
                errors.append("End time must not be before start time")

        poster_url = data.get("poster_url") or None
        if poster_url is not None:
            poster_url = str(poster_url).strip() or None

        if errors or start_time is None:
            raise ValidationError("Validation failed", errors=errors)

        event = self._db.create_event(
            principal.user_id,
            name=name,
            description=description,
            poster_url=poster_url,
            start_time=start_time,
            end_time=end_time,
            location=location,
        )
        logger.info("Event %s (%s) created by user %s", event.id, event.name, principal.user_id)
        return event

    def add_ticket_type(self, principal: Principal, event_id: int, data: Mapping[str, Any]) -> TicketType:
        authorize({Role.ORGANIZATION}, principal)
        self._require_event_owner(principal, event_id)

        errors: List[str] = []
        name = sanitize_text(str(data.get("name") or ""))
        if not 3 <= len(name) <= 100:
            errors.append("Ticket name must be 3-100 characters")
        price = _require_int(data.get("price"), "Price", 0, errors)
        quota = _require_int(data.get("quota"), "Quota", 1, errors)
        if errors:
            raise ValidationError("Validation failed", errors=errors)

        ticket_type = self._db.create_ticket_type(event_id, name=name, price=price, quota=quota)
        logger.info(
            "Ticket type %s (%s) added to event %s by user %s",
            ticket_type.id,
            ticket_type.name,
            event_id,
            principal.user_id,
        )
        return ticket_type

    def list_my_events(self, principal: Principal) -> List[Event]:
        authorize({Role.ORGANIZATION}, principal)
        return self._db.list_events_for_owner(principal.user_id)

    # ------------------------------------------------------------------
    # Registration ledger
    # ------------------------------------------------------------------
    def register(self, principal: Principal, event_id: int, ticket_type_id: int) -> RegistrationResult:
        """Reserve a seat for ``principal`` and open a payment session if needed.

        The availability checks and the write share one short database
        transaction, so concurrent callers for the same ticket type can never
        oversell it. The payment gateway is called only after that commit; if
        it fails the fresh registration is cancelled to free the seat.
        """

        user = self._db.get_user(principal.user_id)
        if user is None:
            raise AuthError("User no longer exists")

        with self._db.reserve_seat(
            user_id=principal.user_id,
            event_id=event_id,
            ticket_type_id=ticket_type_id,
            redemption_code=generate_redemption_code(),
        ) as reservation:
            ticket_type = reservation.ticket_type
            event = reservation.event
            if ticket_type.is_free:
                registration = reservation.set_status(PaymentStatus.PAID)
            else:
                order_id = build_order_id(reservation.registration.id)
                registration = reservation.attach_order(order_id)

        if ticket_type.is_free:
            result = RegistrationResult(registration=registration, is_free=True)
        else:
            result = self._open_payment(registration, order_id, user, event, ticket_type)

        logger.info(
            "User %s registered for event %s with ticket type %s (registration %s)",
            principal.user_id,
            event_id,
            ticket_type_id,
            registration.id,
        )
        return result

    def _open_payment(
        self,
        registration: Registration,
        order_id: str,
        user: User,
        event: Event,
        ticket_type: TicketType,
    ) -> RegistrationResult:
        try:
            session = self._gateway.create_transaction(
                order_id=order_id,
                amount=ticket_type.price,
                customer=CustomerDetails(email=user.email, first_name=user.display_name),
                items=[
                    LineItem(
                        id=str(ticket_type.id),
                        name=f"{event.name} - {ticket_type.name}",
                        price=ticket_type.price,
                    )
                ],
            )
        except Exception:
            released = self._db.transition_registration_status(
                registration.id,
                expected=PaymentStatus.PENDING,
                new=PaymentStatus.CANCELLED,
            )
            logger.warning(
                "Payment session for registration %s failed; seat %s",
                registration.id,
                "released" if released else "already settled",
            )
            raise
        return RegistrationResult(
            registration=registration,
            is_free=False,
            payment_token=session.token,
            payment_url=session.redirect_url,
            order_id=order_id,
        )

    def confirm_payment(self, principal: Principal, registration_id: int) -> Registration:
        authorize({Role.ORGANIZATION}, principal)
        found = self._db.get_registration_owner(registration_id)
        if found is None:
            raise NotFoundError("Registration not found")
        registration, owner_id = found
        if owner_id != principal.user_id:
            logger.warning(
                "User %s attempted to confirm payment for registration %s of another organizer",
                principal.user_id,
                registration_id,
            )
            raise ForbiddenError("Access denied: you do not own this event")

        if registration.payment_status == PaymentStatus.PAID:
            return registration
        if registration.payment_status == PaymentStatus.CANCELLED:
            raise ConflictError("Cancelled registrations cannot be confirmed")

        applied = self._db.transition_registration_status(
            registration_id,
            expected=PaymentStatus.PENDING,
            new=PaymentStatus.PAID,
        )
        updated = self._db.get_registration(registration_id)
        if updated is None:
            raise NotFoundError("Registration not found")
        if not applied and updated.payment_status != PaymentStatus.PAID:
            raise ConflictError("Registration changed state while confirming payment")
        logger.info("Payment confirmed for registration %s by user %s", registration_id, principal.user_id)
        return updated

    def list_attendees(self, principal: Principal, event_id: int) -> List[Attendee]:
        authorize({Role.ORGANIZATION}, principal)
        self._require_event_owner(principal, event_id)
        return self._db.list_attendees(event_id)

    def list_my_registrations(self, principal: Principal) -> List[RegistrationSummary]:
        authorize({Role.ATTENDEE}, principal)
        return self._db.list_registrations_for_user(principal.user_id)

    def payment_status(self, principal: Principal, order_id: str) -> Dict[str, Any]:
        """Proxy the gateway's view of an order to its attendee or organizer."""

        try:
            registration_id = parse_order_id(order_id)
        except ValueError as exc:
            raise NotFoundError("Order not found") from exc
        found = self._db.get_registration_owner(registration_id)
        if found is None:
            raise NotFoundError("Order not found")
        registration, owner_id = found
        if principal.user_id not in {registration.user_id, owner_id}:
            raise ForbiddenError("Access denied: this order belongs to someone else")
        return self._gateway.get_status(order_id)

    def _require_event_owner(self, principal: Principal, event_id: int) -> Event:
        event = self._db.get_event(event_id)
        if event is None:
            raise NotFoundError("Event not found")
        if event.owner_user_id != principal.user_id:
            logger.warning("User %s denied access to event %s owned by another organizer", principal.user_id, event_id)
            raise ForbiddenError("Access denied: you do not own this event")
        return event


__all__ = ["RegistrationResult", "RegistrationService", "generate_redemption_code"]
