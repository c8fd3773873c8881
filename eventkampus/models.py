"""Domain records for users, events, ticket types and registrations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Role(str, Enum):
    ATTENDEE = "ATTENDEE"
    ORGANIZATION = "ORGANIZATION"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class User:
    """Represents an account stored in the credential table."""

    id: int
    email: str
    display_name: str
    role: Role
    created_at: datetime

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role.value,
        }


@dataclass(frozen=True)
class Principal:
    """The authenticated caller resolved from an access token."""

    user_id: int
    email: str
    role: Role


@dataclass(frozen=True)
class Event:
    id: int
    name: str
    description: str
    poster_url: Optional[str]
    start_time: datetime
    end_time: Optional[datetime]
    location: str
    owner_user_id: int
    created_at: datetime
    organizer_name: Optional[str] = None


@dataclass(frozen=True)
class TicketType:
    id: int
    event_id: int
    name: str
    price: int
    quota: int
    created_at: datetime

    @property
    def is_free(self) -> bool:
        return self.price == 0


@dataclass(frozen=True)
class Registration:
    """A single ledger row pairing a user with a ticket type for an event."""

    id: int
    event_id: int
    user_id: int
    ticket_type_id: int
    payment_status: PaymentStatus
    redemption_code: str
    created_at: datetime
    updated_at: datetime
    order_id: Optional[str] = None


@dataclass(frozen=True)
class Attendee:
    """Registration joined with the attendee and ticket type, for organizers."""

    registration_id: int
    payment_status: PaymentStatus
    display_name: str
    email: str
    ticket_name: str
    price: int


@dataclass(frozen=True)
class RegistrationSummary:
    """Registration joined with event and ticket fields, for attendees."""

    registration_id: int
    event_id: int
    event_name: str
    start_time: datetime
    location: str
    payment_status: PaymentStatus
    redemption_code: str
    ticket_name: str
    price: int


__all__ = [
    "Attendee",
    "Event",
    "PaymentStatus",
    "Principal",
    "Registration",
    "RegistrationSummary",
    "Role",
    "TicketType",
    "User",
]
