"""SQLite-backed persistence for users, events, ticket types and registrations."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from passlib.context import CryptContext

from .errors import CapacityError, ConflictError, NotFoundError, UpstreamTimeoutError
from .models import (
    Attendee,
    Event,
    PaymentStatus,
    Registration,
    RegistrationSummary,
    Role,
    TicketType,
    User,
)

logger = logging.getLogger("eventkampus.database")

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _parse_optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return _parse_datetime(str(value))


def _hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def _verify_password(password: str, hashed: str) -> bool:
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


def _is_lock_timeout(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class Reservation:
    """An in-flight registration whose row is written but not yet committed."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        registration: Registration,
        ticket_type: TicketType,
        event: Event,
    ) -> None:
        self._conn = conn
        self.registration = registration
        self.ticket_type = ticket_type
        self.event = event

    def set_status(self, status: PaymentStatus) -> Registration:
        return self._update("payment_status", status.value)

    def attach_order(self, order_id: str) -> Registration:
        return self._update("order_id", order_id)

    def _update(self, column: str, value: str) -> Registration:
        self._conn.execute(
            f"UPDATE registrations SET {column} = ?, updated_at = ? WHERE id = ?",
            (value, _serialize_datetime(_current_timestamp()), self.registration.id),
        )
        row = self._conn.execute(
            "SELECT * FROM registrations WHERE id = ?",
            (self.registration.id,),
        ).fetchone()
        self.registration = Database._row_to_registration(row)
        return self.registration


class Database:
    """Thin wrapper around SQLite handing out short-lived connections."""

    def __init__(self, path: Path, *, timeout: float = 15.0) -> None:
        _ensure_directory(path)
        self._path = path
        self._timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=self._timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Acquire a connection, commit on success and always release it."""

        conn = self._connect()
        try:
            with conn:
                yield conn
        except sqlite3.OperationalError as exc:
            if _is_lock_timeout(exc):
                raise UpstreamTimeoutError("Timed out waiting for the database") from exc
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block inside ``BEGIN IMMEDIATE`` so writers are serialised."""

        conn = self._connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            conn.close()
            if _is_lock_timeout(exc):
                raise UpstreamTimeoutError("Timed out waiting for the database") from exc
            raise
        try:
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.OperationalError:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.OperationalError as exc:
            if _is_lock_timeout(exc):
                raise UpstreamTimeoutError("Timed out waiting for the database") from exc
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    role TEXT NOT NULL CHECK (role IN ('ATTENDEE', 'ORGANIZATION')),
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL,
                    poster_url TEXT,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    location TEXT NOT NULL,
                    owner_user_id INTEGER NOT NULL REFERENCES users(id),
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ticket_types (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id INTEGER NOT NULL REFERENCES events(id),
                    name TEXT NOT NULL,
                    price INTEGER NOT NULL CHECK (price >= 0),
                    quota INTEGER NOT NULL CHECK (quota >= 1),
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS registrations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id INTEGER NOT NULL REFERENCES events(id),
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    ticket_type_id INTEGER NOT NULL REFERENCES ticket_types(id),
                    payment_status TEXT NOT NULL DEFAULT 'PENDING'
                        CHECK (payment_status IN ('PENDING', 'PAID', 'CANCELLED')),
                    redemption_code TEXT NOT NULL UNIQUE,
                    order_id TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (user_id, event_id)
                );

                CREATE INDEX IF NOT EXISTS idx_events_owner ON events(owner_user_id);
                CREATE INDEX IF NOT EXISTS idx_events_start ON events(start_time);
                CREATE INDEX IF NOT EXISTS idx_ticket_types_event ON ticket_types(event_id);
                CREATE INDEX IF NOT EXISTS idx_registrations_ticket ON registrations(ticket_type_id);
                """
            )

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        password: str,
        display_name: str,
        role: Role = Role.ATTENDEE,
    ) -> User:
        """Create a new user, storing only a salted hash of the password."""

        if not password:
            raise ValueError("Password must not be empty")

        created_at = _current_timestamp()
        normalized_email = email.strip().lower()
        password_hash = _hash_password(password)

        with self.connection() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (email, password_hash, display_name, role, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        normalized_email,
                        password_hash,
                        display_name,
                        role.value,
                        _serialize_datetime(created_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("This email is already registered") from exc

            user_id = cursor.lastrowid

        return User(
            id=int(user_id),
            email=normalized_email,
            display_name=display_name,
            role=role,
            created_at=created_at,
        )

    def get_user(self, user_id: int) -> Optional[User]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def authenticate_user(self, email: str, password: str) -> Optional[User]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        stored_hash = row["password_hash"]
        if not stored_hash or not _verify_password(password, stored_hash):
            return None
        return self._row_to_user(row)

    # ------------------------------------------------------------------
    # Event catalog
    # ------------------------------------------------------------------
    def create_event(
        self,
        owner_user_id: int,
        *,
        name: str,
        description: str,
        poster_url: Optional[str],
        start_time: datetime,
        end_time: Optional[datetime],
        location: str,
    ) -> Event:
        created_at = _current_timestamp()
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events (
                    name, description, poster_url, start_time, end_time, location,
                    owner_user_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    description,
                    poster_url,
                    _serialize_datetime(start_time),
                    _serialize_datetime(end_time) if end_time is not None else None,
                    location,
                    owner_user_id,
                    _serialize_datetime(created_at),
                ),
            )
            event_id = cursor.lastrowid

        event = self.get_event(int(event_id))
        if event is None:
            raise RuntimeError("Failed to load event after creation")
        return event

    def get_event(self, event_id: int) -> Optional[Event]:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT e.*, u.display_name AS organizer_name
                  FROM events e
                  JOIN users u ON e.owner_user_id = u.id
                 WHERE e.id = ?
                """,
                (event_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def list_events(self) -> List[Event]:
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT e.*, u.display_name AS organizer_name
                  FROM events e
                  JOIN users u ON e.owner_user_id = u.id
                 ORDER BY e.start_time ASC, e.id ASC
                """
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def list_events_for_owner(self, owner_user_id: int) -> List[Event]:
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT e.*, u.display_name AS organizer_name
                  FROM events e
                  JOIN users u ON e.owner_user_id = u.id
                 WHERE e.owner_user_id = ?
                 ORDER BY e.start_time DESC, e.id DESC
                """,
                (owner_user_id,),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def create_ticket_type(self, event_id: int, *, name: str, price: int, quota: int) -> TicketType:
        created_at = _current_timestamp()
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO ticket_types (event_id, name, price, quota, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (event_id, name, price, quota, _serialize_datetime(created_at)),
            )
            ticket_type_id = cursor.lastrowid

        return TicketType(
            id=int(ticket_type_id),
            event_id=event_id,
            name=name,
            price=price,
            quota=quota,
            created_at=created_at,
        )

    def get_ticket_type(self, ticket_type_id: int) -> Optional[TicketType]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM ticket_types WHERE id = ?",
                (ticket_type_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_ticket_type(row)

    def list_ticket_types(self, event_id: int) -> List[TicketType]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM ticket_types WHERE event_id = ? ORDER BY price ASC, id ASC",
                (event_id,),
            ).fetchall()
        return [self._row_to_ticket_type(row) for row in rows]

    # ------------------------------------------------------------------
    # Registration ledger
    # ------------------------------------------------------------------
    @contextmanager
    def reserve_seat(
        self,
        *,
        user_id: int,
        event_id: int,
        ticket_type_id: int,
        redemption_code: str,
    ) -> Iterator[Reservation]:
        """Check availability and write a PENDING registration atomically.

        The duplicate check, the quota count and the write all run inside a
        single ``BEGIN IMMEDIATE`` transaction that commits when the ``with``
        block exits cleanly. Keep the block short: every other writer waits on
        it. A cancelled registration of the same user for the same event is
        reopened instead of inserting a second row.
        """

        with self.transaction() as conn:
            ticket_row = conn.execute(
                "SELECT * FROM ticket_types WHERE id = ? AND event_id = ?",
                (ticket_type_id, event_id),
            ).fetchone()
            if ticket_row is None:
                raise NotFoundError("Ticket type is not valid for this event")
            ticket_type = self._row_to_ticket_type(ticket_row)

            event_row = conn.execute(
                """
                SELECT e.*, u.display_name AS organizer_name
                  FROM events e
                  JOIN users u ON e.owner_user_id = u.id
                 WHERE e.id = ?
                """,
                (event_id,),
            ).fetchone()
            event = self._row_to_event(event_row)

            existing = conn.execute(
                "SELECT id, payment_status FROM registrations WHERE user_id = ? AND event_id = ?",
                (user_id, event_id),
            ).fetchone()
            if existing is not None and existing["payment_status"] != PaymentStatus.CANCELLED.value:
                raise ConflictError("You are already registered for this event")

            taken = conn.execute(
                """
                SELECT COUNT(*) FROM registrations
                 WHERE ticket_type_id = ? AND payment_status != ?
                """,
                (ticket_type_id, PaymentStatus.CANCELLED.value),
            ).fetchone()[0]
            if int(taken) >= ticket_type.quota:
                raise CapacityError()

            now = _serialize_datetime(_current_timestamp())
            if existing is not None:
                # A cancelled registration is reopened in place.
                registration_id = int(existing["id"])
                conn.execute(
                    """
                    UPDATE registrations
                       SET ticket_type_id = ?, payment_status = ?, redemption_code = ?,
                           order_id = NULL, updated_at = ?
                     WHERE id = ?
                    """,
                    (ticket_type_id, PaymentStatus.PENDING.value, redemption_code, now, registration_id),
                )
            else:
                try:
                    cursor = conn.execute(
                        """
                        INSERT INTO registrations (
                            event_id, user_id, ticket_type_id, payment_status, redemption_code,
                            created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            event_id,
                            user_id,
                            ticket_type_id,
                            PaymentStatus.PENDING.value,
                            redemption_code,
                            now,
                            now,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ConflictError("You are already registered for this event") from exc
                registration_id = int(cursor.lastrowid)

            row = conn.execute(
                "SELECT * FROM registrations WHERE id = ?",
                (registration_id,),
            ).fetchone()
            yield Reservation(conn, self._row_to_registration(row), ticket_type, event)

    def get_registration(self, registration_id: int) -> Optional[Registration]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM registrations WHERE id = ?",
                (registration_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_registration(row)

    def get_registration_owner(self, registration_id: int) -> Optional[Tuple[Registration, int]]:
        """Return the registration along with the user id owning its event."""

        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT r.*, e.owner_user_id AS event_owner_id
                  FROM registrations r
                  JOIN events e ON r.event_id = e.id
                 WHERE r.id = ?
                """,
                (registration_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_registration(row), int(row["event_owner_id"])

    def transition_registration_status(
        self,
        registration_id: int,
        *,
        expected: PaymentStatus,
        new: PaymentStatus,
    ) -> bool:
        """Apply ``expected -> new`` only if the row is still in ``expected``."""

        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE registrations
                   SET payment_status = ?, updated_at = ?
                 WHERE id = ? AND payment_status = ?
                """,
                (
                    new.value,
                    _serialize_datetime(_current_timestamp()),
                    registration_id,
                    expected.value,
                ),
            )
            return cursor.rowcount > 0

    def list_attendees(self, event_id: int) -> List[Attendee]:
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT r.id AS registration_id,
                       r.payment_status,
                       u.display_name,
                       u.email,
                       tt.name AS ticket_name,
                       tt.price
                  FROM registrations r
                  JOIN users u ON r.user_id = u.id
                  JOIN ticket_types tt ON r.ticket_type_id = tt.id
                 WHERE r.event_id = ?
                 ORDER BY r.id
                """,
                (event_id,),
            ).fetchall()
        return [
            Attendee(
                registration_id=int(row["registration_id"]),
                payment_status=PaymentStatus(row["payment_status"]),
                display_name=str(row["display_name"]),
                email=str(row["email"]),
                ticket_name=str(row["ticket_name"]),
                price=int(row["price"]),
            )
            for row in rows
        ]

    def list_registrations_for_user(self, user_id: int) -> List[RegistrationSummary]:
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT r.id AS registration_id,
                       e.id AS event_id,
                       e.name AS event_name,
                       e.start_time,
                       e.location,
                       r.payment_status,
                       r.redemption_code,
                       tt.name AS ticket_name,
                       tt.price
                  FROM registrations r
                  JOIN events e ON r.event_id = e.id
                  JOIN ticket_types tt ON r.ticket_type_id = tt.id
                 WHERE r.user_id = ?
                 ORDER BY e.start_time DESC, r.id DESC
                """,
                (user_id,),
            ).fetchall()
        return [
            RegistrationSummary(
                registration_id=int(row["registration_id"]),
                event_id=int(row["event_id"]),
                event_name=str(row["event_name"]),
                start_time=_parse_datetime(str(row["start_time"])),
                location=str(row["location"]),
                payment_status=PaymentStatus(row["payment_status"]),
                redemption_code=str(row["redemption_code"]),
                ticket_name=str(row["ticket_name"]),
                price=int(row["price"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            email=str(row["email"]),
            display_name=str(row["display_name"]),
            role=Role(row["role"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        keys = row.keys()
        return Event(
            id=int(row["id"]),
            name=str(row["name"]),
            description=str(row["description"]),
            poster_url=row["poster_url"],
            start_time=_parse_datetime(str(row["start_time"])),
            end_time=_parse_optional_datetime(row["end_time"]),
            location=str(row["location"]),
            owner_user_id=int(row["owner_user_id"]),
            created_at=_parse_datetime(str(row["created_at"])),
            organizer_name=row["organizer_name"] if "organizer_name" in keys else None,
        )

    @staticmethod
    def _row_to_ticket_type(row: sqlite3.Row) -> TicketType:
        return TicketType(
            id=int(row["id"]),
            event_id=int(row["event_id"]),
            name=str(row["name"]),
            price=int(row["price"]),
            quota=int(row["quota"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    @staticmethod
    def _row_to_registration(row: sqlite3.Row) -> Registration:
        return Registration(
            id=int(row["id"]),
            event_id=int(row["event_id"]),
            user_id=int(row["user_id"]),
            ticket_type_id=int(row["ticket_type_id"]),
            payment_status=PaymentStatus(row["payment_status"]),
            redemption_code=str(row["redemption_code"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
            order_id=row["order_id"],
        )


__all__ = ["Database", "Reservation"]
