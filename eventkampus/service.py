"""HTTP API for the EventKampus ticketing backend."""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, TypeVar

import anyio
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .auth import AuthService
from .config import Settings, load_settings
from .database import Database
from .errors import AuthError, EventKampusError, InternalError
from .models import (
    Attendee,
    Event,
    Principal,
    Registration,
    RegistrationSummary,
    TicketType,
    User,
)
from .payments import MidtransGateway, PaymentGateway, PaymentReconciler
from .registrations import RegistrationResult, RegistrationService
from .security import BearerAuth, TokenService
from .throttle import AttemptThrottle, RequestThrottle, client_key

logger = logging.getLogger("eventkampus.service")

API_PREFIX = "/api"

T = TypeVar("T")


class _AliasedModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserRegisterRequest(BaseModel):
    email: str
    password: str
    display_name: str
    role: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1)


class RefreshRequest(_AliasedModel):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class EventCreateRequest(BaseModel):
    name: str
    description: str
    poster_url: Optional[str] = None
    start_time: str
    end_time: Optional[str] = None
    location: str


class TicketTypeCreateRequest(BaseModel):
    name: str
    price: int
    quota: int


class TicketRegistrationRequest(BaseModel):
    ticket_type_id: int


class UserResponse(BaseModel):
    id: int
    email: str
    display_name: str
    role: str


class UserRegisterResponse(BaseModel):
    message: str
    user: UserResponse


class LoginResponse(_AliasedModel):
    message: str
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")
    token_type: str = Field(default="bearer", alias="tokenType")
    user: UserResponse


class RefreshResponse(_AliasedModel):
    access_token: str = Field(..., alias="accessToken")
    user: UserResponse


class EventResponse(BaseModel):
    id: int
    name: str
    description: str
    poster_url: Optional[str]
    start_time: datetime
    end_time: Optional[datetime]
    location: str
    owner_user_id: int
    organizer_name: Optional[str]


class TicketTypeResponse(BaseModel):
    id: int
    event_id: int
    name: str
    price: int
    quota: int


class EventDetailResponse(BaseModel):
    event: EventResponse
    tickets: List[TicketTypeResponse]


class RegistrationResponse(BaseModel):
    id: int
    event_id: int
    user_id: int
    ticket_type_id: int
    payment_status: str
    redemption_code: str
    created_at: datetime
    updated_at: datetime


class TicketRegistrationResponse(_AliasedModel):
    message: str
    registration: RegistrationResponse
    payment_token: Optional[str] = Field(default=None, alias="paymentToken")
    payment_url: Optional[str] = Field(default=None, alias="paymentUrl")
    order_id: Optional[str] = Field(default=None, alias="orderId")
    is_free: bool = Field(..., alias="isFree")


class AttendeeResponse(BaseModel):
    registration_id: int
    payment_status: str
    display_name: str
    email: str
    ticket_name: str
    price: int


class MyRegistrationResponse(BaseModel):
    registration_id: int
    event_id: int
    event_name: str
    start_time: datetime
    location: str
    payment_status: str
    redemption_code: str
    ticket_name: str
    price: int


def user_to_response(user: User) -> UserResponse:
    return UserResponse(**user.to_public_dict())


def event_to_response(event: Event) -> EventResponse:
    return EventResponse(
        id=event.id,
        name=event.name,
        description=event.description,
        poster_url=event.poster_url,
        start_time=event.start_time,
        end_time=event.end_time,
        location=event.location,
        owner_user_id=event.owner_user_id,
        organizer_name=event.organizer_name,
    )


def ticket_type_to_response(ticket_type: TicketType) -> TicketTypeResponse:
    return TicketTypeResponse(
        id=ticket_type.id,
        event_id=ticket_type.event_id,
        name=ticket_type.name,
        price=ticket_type.price,
        quota=ticket_type.quota,
    )


def registration_to_response(registration: Registration) -> RegistrationResponse:
    return RegistrationResponse(
        id=registration.id,
        event_id=registration.event_id,
        user_id=registration.user_id,
        ticket_type_id=registration.ticket_type_id,
        payment_status=registration.payment_status.value,
        redemption_code=registration.redemption_code,
        created_at=registration.created_at,
        updated_at=registration.updated_at,
    )


def _attendee_to_response(attendee: Attendee) -> AttendeeResponse:
    return AttendeeResponse(
        registration_id=attendee.registration_id,
        payment_status=attendee.payment_status.value,
        display_name=attendee.display_name,
        email=attendee.email,
        ticket_name=attendee.ticket_name,
        price=attendee.price,
    )


def _summary_to_response(summary: RegistrationSummary) -> MyRegistrationResponse:
    return MyRegistrationResponse(
        registration_id=summary.registration_id,
        event_id=summary.event_id,
        event_name=summary.event_name,
        start_time=summary.start_time,
        location=summary.location,
        payment_status=summary.payment_status.value,
        redemption_code=summary.redemption_code,
        ticket_name=summary.ticket_name,
        price=summary.price,
    )


def _result_to_response(result: RegistrationResult) -> TicketRegistrationResponse:
    message = "Registration successful!"
    if not result.is_free:
        message = "Registration successful! Please complete the payment."
    return TicketRegistrationResponse(
        message=message,
        registration=registration_to_response(result.registration),
        payment_token=result.payment_token,
        payment_url=result.payment_url,
        order_id=result.order_id,
        is_free=result.is_free,
    )


async def _run(
    operation: str,
    principal: Optional[Principal],
    func: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run a blocking service call in a worker thread.

    Domain errors pass through untouched; anything else is logged with the
    operation name and caller id and replaced by a generic internal error.
    """

    try:
        return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))
    except EventKampusError:
        raise
    except Exception as exc:
        logger.exception(
            "Unexpected failure in %s for user %s",
            operation,
            principal.user_id if principal is not None else "<anonymous>",
        )
        raise InternalError() from exc


def register_api_routes(
    router: APIRouter,
    *,
    auth_service: AuthService,
    registrations: RegistrationService,
    reconciler: PaymentReconciler,
    current_principal: Callable[..., Any],
    throttle: AttemptThrottle,
    notification_router: APIRouter,
) -> None:
    """Expose the JSON API endpoints on ``router``.

    The gateway webhook goes on ``notification_router`` so it stays outside
    the per-client request limit applied to ``router``.
    """

    @router.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    # -------------------------------------------------------------- auth
    @router.post(
        "/auth/register",
        status_code=status.HTTP_201_CREATED,
        response_model=UserRegisterResponse,
    )
    async def register_user(payload: UserRegisterRequest, request: Request) -> UserRegisterResponse:
        throttle.hit(client_key(request))
        user = await _run(
            "register_user",
            None,
            auth_service.register,
            payload.email,
            payload.password,
            payload.display_name,
            payload.role,
        )
        return UserRegisterResponse(message="Registration successful!", user=user_to_response(user))

    @router.post("/auth/login", response_model=LoginResponse)
    async def login(payload: LoginRequest, request: Request) -> LoginResponse:
        throttle.hit(client_key(request))
        result = await _run("login", None, auth_service.login, payload.email, payload.password)
        return LoginResponse(
            message="Login successful!",
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            user=user_to_response(result.user),
        )

    @router.post("/auth/refresh", response_model=RefreshResponse)
    async def refresh(payload: RefreshRequest) -> RefreshResponse:
        result = await _run("refresh", None, auth_service.refresh, payload.refresh_token)
        return RefreshResponse(access_token=result.access_token, user=user_to_response(result.user))

    @router.get("/auth/me", response_model=UserResponse)
    async def read_current_user(principal: Principal = Depends(current_principal)) -> UserResponse:
        user = await _run("read_current_user", principal, auth_service.current_user, principal.user_id)
        return user_to_response(user)

    # ------------------------------------------------------------ events
    @router.get("/events", response_model=List[EventResponse])
    async def list_events() -> List[EventResponse]:
        events = await _run("list_events", None, registrations.list_events)
        return [event_to_response(event) for event in events]

    @router.get("/events/{event_id}", response_model=EventDetailResponse)
    async def get_event(event_id: int) -> EventDetailResponse:
        event, tickets = await _run("get_event", None, registrations.get_event, event_id)
        return EventDetailResponse(
            event=event_to_response(event),
            tickets=[ticket_type_to_response(ticket) for ticket in tickets],
        )

    @router.post("/events", status_code=status.HTTP_201_CREATED, response_model=EventResponse)
    async def create_event(
        payload: EventCreateRequest,
        principal: Principal = Depends(current_principal),
    ) -> EventResponse:
        event = await _run(
            "create_event",
            principal,
            registrations.create_event,
            principal,
            payload.model_dump(),
        )
        return event_to_response(event)

    @router.post(
        "/events/{event_id}/tickets",
        status_code=status.HTTP_201_CREATED,
        response_model=TicketTypeResponse,
    )
    async def add_ticket_type(
        event_id: int,
        payload: TicketTypeCreateRequest,
        principal: Principal = Depends(current_principal),
    ) -> TicketTypeResponse:
        ticket_type = await _run(
            "add_ticket_type",
            principal,
            registrations.add_ticket_type,
            principal,
            event_id,
            payload.model_dump(),
        )
        return ticket_type_to_response(ticket_type)

    @router.post(
        "/events/{event_id}/register",
        status_code=status.HTTP_201_CREATED,
        response_model=TicketRegistrationResponse,
    )
    async def register_for_event(
        event_id: int,
        payload: TicketRegistrationRequest,
        principal: Principal = Depends(current_principal),
    ) -> TicketRegistrationResponse:
        result = await _run(
            "register_for_event",
            principal,
            registrations.register,
            principal,
            event_id,
            payload.ticket_type_id,
        )
        return _result_to_response(result)

    # ------------------------------------------------------ organization
    @router.get("/organization/my-events", response_model=List[EventResponse])
    async def list_my_events(principal: Principal = Depends(current_principal)) -> List[EventResponse]:
        events = await _run("list_my_events", principal, registrations.list_my_events, principal)
        return [event_to_response(event) for event in events]

    @router.get(
        "/organization/my-events/{event_id}/attendees",
        response_model=List[AttendeeResponse],
    )
    async def list_attendees(
        event_id: int,
        principal: Principal = Depends(current_principal),
    ) -> List[AttendeeResponse]:
        attendees = await _run("list_attendees", principal, registrations.list_attendees, principal, event_id)
        return [_attendee_to_response(attendee) for attendee in attendees]

    @router.patch(
        "/organization/confirm-payment/{registration_id}",
        response_model=RegistrationResponse,
    )
    async def confirm_payment(
        registration_id: int,
        principal: Principal = Depends(current_principal),
    ) -> RegistrationResponse:
        registration = await _run(
            "confirm_payment",
            principal,
            registrations.confirm_payment,
            principal,
            registration_id,
        )
        return registration_to_response(registration)

    # ---------------------------------------------------------- attendee
    @router.get("/attendee/my-registrations", response_model=List[MyRegistrationResponse])
    async def list_my_registrations(
        principal: Principal = Depends(current_principal),
    ) -> List[MyRegistrationResponse]:
        summaries = await _run(
            "list_my_registrations",
            principal,
            registrations.list_my_registrations,
            principal,
        )
        return [_summary_to_response(summary) for summary in summaries]

    # ----------------------------------------------------------- payment
    @notification_router.post("/payment/notification")
    async def payment_notification(request: Request) -> Dict[str, str]:
        try:
            payload = await request.json()
            if not isinstance(payload, dict):
                raise ValueError("Notification payload must be a JSON object")
            await anyio.to_thread.run_sync(reconciler.handle_notification, payload)
        except Exception:
            logger.exception("Failed to process payment notification")
        return {"message": "Notification received"}

    @router.get("/payment/status/{order_id}")
    async def payment_status(
        order_id: str,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        return await _run("payment_status", principal, registrations.payment_status, principal, order_id)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(EventKampusError)
    async def handle_domain_error(_: Request, exc: EventKampusError) -> JSONResponse:
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        errors = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            message = error.get("msg", "Invalid value")
            errors.append(f"{location}: {message}" if location else message)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Validation failed", "code": "VALIDATION_ERROR", "errors": errors},
        )


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
    gateway: PaymentGateway | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the ticketing API."""

    app_settings = settings or load_settings()
    db = database or Database(app_settings.db_path, timeout=app_settings.db_timeout)
    db.initialize()

    tokens = TokenService(
        app_settings.jwt_secret,
        app_settings.jwt_refresh_secret,
        access_ttl=timedelta(minutes=app_settings.access_token_minutes),
        refresh_ttl=timedelta(days=app_settings.refresh_token_days),
    )
    payment_gateway = gateway or MidtransGateway(
        app_settings.midtrans_server_key,
        is_production=app_settings.midtrans_is_production,
        timeout=app_settings.gateway_timeout,
    )
    auth_throttle = AttemptThrottle(
        limit=app_settings.auth_rate_limit,
        window=timedelta(seconds=app_settings.auth_rate_window),
    )
    request_throttle = AttemptThrottle(
        limit=app_settings.general_rate_limit,
        window=timedelta(seconds=app_settings.general_rate_window),
    )

    auth_service = AuthService(db, tokens)
    registrations = RegistrationService(db, payment_gateway)
    reconciler = PaymentReconciler(db, app_settings.midtrans_server_key)

    app = FastAPI(
        title="EventKampus API",
        version="0.1.0",
        description="Campus event listing, ticket registration and payment reconciliation.",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(app_settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    router = APIRouter(prefix=API_PREFIX, dependencies=[Depends(RequestThrottle(request_throttle))])
    notification_router = APIRouter(prefix=API_PREFIX)
    register_api_routes(
        router,
        auth_service=auth_service,
        registrations=registrations,
        reconciler=reconciler,
        current_principal=BearerAuth(tokens),
        throttle=auth_throttle,
        notification_router=notification_router,
    )
    app.include_router(router)
    app.include_router(notification_router)
    _install_error_handlers(app)

    return app


__all__ = ["API_PREFIX", "create_app", "register_api_routes"]
