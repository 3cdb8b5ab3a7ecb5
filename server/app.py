"""
FastAPI application for the freelancer invoicing service.

Owner endpoints identify the user by the ``X-User-Id`` header. The approval
endpoints are public: the token in the path is the only credential.

Endpoints:
- GET  /health                       - Health check
- POST/DELETE /session               - Open / close a user session
- /profile, /tasks, /time-logs       - Owner data
- /timer                             - Work timer
- /invoices                          - Invoice lifecycle and e-mail dispatch
- /approve/{token}                   - Client approval
- /integrations/clickup              - ClickUp import
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Optional

import httpx
from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from database import DatabaseEntityStore, init_db, owner_of_invoice
from integrations.clickup_client import ClickUpClient, ClickUpClientError, to_task_create
from invoicing.approval import Decision
from invoicing.dispatch import InvoiceDispatcher
from invoicing.engine import InvoiceLockRegistry
from invoicing.errors import (
    InvoicingError,
    NotFound,
    StateConflict,
    UpstreamFailure,
    ValidationError,
)
from invoicing.events import EventBus, InvoiceEvent
from invoicing.tokens import parse_approval_token
from notifications.email_client import EmailClient
from server.config import Settings, get_settings
from server.context import SessionContext
from state_machine.invoice_state import InvoiceState
from state_machine.models import (
    RATE_PLACES,
    DomainModel,
    FreelancerProfile,
    InvoiceCreate,
    InvoiceUpdate,
    TaskCreate,
    TaskUpdate,
    TimeLogCreate,
    TimeLogUpdate,
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Most specific class first.
ERROR_STATUS_CODES: list[tuple[type, int]] = [
    (ValidationError, 422),
    (NotFound, 404),
    (StateConflict, 409),
    (UpstreamFailure, 502),
]


# ============================================================================
# Request / Response Models
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    open_sessions: int


class PreviewRequest(DomainModel):
    task_ids: list[str]


class PaymentSetupRequest(DomainModel):
    """Payment details for an approved invoice."""

    method: str
    instructions: Optional[str] = None


class EmailRequest(DomainModel):
    """Optional overrides for the invoice e-mail."""

    to: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None


class TimerStartRequest(DomainModel):
    task_id: Optional[str] = None


class ClickUpCodeRequest(DomainModel):
    code: str = Field(..., min_length=1)


class ClickUpImportRequest(DomainModel):
    """Import tasks from a ClickUp list."""

    list_id: str
    list_name: Optional[str] = None
    task_ids: Optional[list[str]] = None
    rate: Optional[Decimal] = Field(None, ge=0, decimal_places=RATE_PLACES)


_decision_adapter = TypeAdapter(Decision)


# ============================================================================
# Application State
# ============================================================================


class AppState:
    """Application state container."""

    def __init__(self, settings: Settings):
        self.settings = settings

        # Shared across every engine in the process
        self.event_bus = EventBus()
        self.locks = InvoiceLockRegistry()

        self.email_client = EmailClient(
            service_id=settings.emailjs_service_id,
            template_id=settings.emailjs_template_id,
            public_key=settings.emailjs_public_key,
            base_url=settings.emailjs_api_url,
            timeout=settings.http_timeout,
        )

        # Custom transport for outbound ClickUp calls (tests)
        self.http_transport: Optional[httpx.AsyncBaseTransport] = None

        self.sessions: dict[str, SessionContext] = {}

        self.event_bus.subscribe(self._log_event)

    @staticmethod
    def _log_event(event: InvoiceEvent) -> None:
        logger.info(f"Invoice event {event.event_type} for {event.invoice_id}")

    def new_context(self, owner_id: str) -> SessionContext:
        return SessionContext(
            DatabaseEntityStore(owner_id),
            event_bus=self.event_bus,
            locks=self.locks,
            origin=self.settings.public_origin,
            token_bytes=self.settings.approval_token_bytes,
        )

    def session_for(self, owner_id: str) -> SessionContext:
        """Return the owner's open session, opening one if needed."""
        context = self.sessions.get(owner_id)
        if context is None:
            context = self.sessions[owner_id] = self.new_context(owner_id)
        return context.open()

    def close_session(self, owner_id: str) -> bool:
        context = self.sessions.pop(owner_id, None)
        if context is None:
            return False
        context.close()
        return True

    def dispatcher_for(self, context: SessionContext) -> InvoiceDispatcher:
        return InvoiceDispatcher(context.require_engine(), self.email_client)

    def clickup_client(self, access_token: Optional[str] = None) -> ClickUpClient:
        return ClickUpClient(
            client_id=self.settings.clickup_client_id,
            client_secret=self.settings.clickup_client_secret,
            access_token=access_token,
            base_url=self.settings.clickup_api_url,
            timeout=self.settings.http_timeout,
            transport=self.http_transport,
        )

    def close(self) -> None:
        for owner_id in list(self.sessions):
            self.close_session(owner_id)


# Global state (will be initialized on startup)
app_state: Optional[AppState] = None


def _state() -> AppState:
    if not app_state:
        raise HTTPException(status_code=503, detail="Service not ready")
    return app_state


def _context(owner_id: str) -> SessionContext:
    owner_id = owner_id.strip()
    if not owner_id:
        raise ValidationError("X-User-Id header is empty", fields=["X-User-Id"])
    return _state().session_for(owner_id)


# ============================================================================
# Lifespan
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global app_state

    settings = getattr(app.state, "settings", None) or get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info("Starting invoicing server...")

    init_db(settings.database_url)
    app_state = AppState(settings)

    logger.info(f"Server ready on {settings.host}:{settings.port}")
    logger.info(f"E-mail delivery: {'EmailJS' if app_state.email_client.is_configured else 'mailto'}")

    yield

    # Cleanup
    logger.info("Shutting down...")
    app_state.close()
    await app_state.email_client.close()
    app_state = None


# ============================================================================
# Error Handling
# ============================================================================


async def invoicing_error_handler(request: Request, exc: InvoicingError) -> JSONResponse:
    """Map domain errors to HTTP responses."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES if isinstance(exc, error_type)),
        400,
    )
    content = exc.to_dict()
    if isinstance(exc, StateConflict) and exc.invoice is not None:
        content["invoice"] = exc.invoice

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")

    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


# ============================================================================
# Application Factory
# ============================================================================


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create FastAPI application."""
    app = FastAPI(
        title="Freelancer Invoicing",
        description="Tasks, time tracking, invoices and client approval",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_exception_handler(InvoicingError, invoicing_error_handler)

    # Register routes
    app.add_api_route("/health", health_check, methods=["GET"])

    app.add_api_route("/session", open_session, methods=["POST"])
    app.add_api_route("/session", close_session, methods=["DELETE"])

    app.add_api_route("/profile", get_profile, methods=["GET"])
    app.add_api_route("/profile", put_profile, methods=["PUT"])
    app.add_api_route("/profile", delete_profile, methods=["DELETE"])

    app.add_api_route("/tasks", list_tasks, methods=["GET"])
    app.add_api_route("/tasks", create_task, methods=["POST"], status_code=201)
    app.add_api_route("/tasks/{task_id}", update_task, methods=["PATCH"])
    app.add_api_route("/tasks/{task_id}", delete_task, methods=["DELETE"])

    app.add_api_route("/time-logs", list_time_logs, methods=["GET"])
    app.add_api_route("/time-logs", create_time_log, methods=["POST"], status_code=201)
    app.add_api_route("/time-logs/{log_id}", update_time_log, methods=["PATCH"])
    app.add_api_route("/time-logs/{log_id}", delete_time_log, methods=["DELETE"])

    app.add_api_route("/timer", get_timer, methods=["GET"])
    app.add_api_route("/timer/start", start_timer, methods=["POST"])
    app.add_api_route("/timer/pause", pause_timer, methods=["POST"])
    app.add_api_route("/timer/stop", stop_timer, methods=["POST"])
    app.add_api_route("/timer/reset", reset_timer, methods=["POST"])

    app.add_api_route("/invoices/preview", preview_invoice, methods=["POST"])
    app.add_api_route("/invoices", list_invoices, methods=["GET"])
    app.add_api_route("/invoices", create_invoice, methods=["POST"], status_code=201)
    app.add_api_route("/invoices/{invoice_id}", get_invoice, methods=["GET"])
    app.add_api_route("/invoices/{invoice_id}", update_invoice, methods=["PATCH"])
    app.add_api_route("/invoices/{invoice_id}", delete_invoice, methods=["DELETE"])
    app.add_api_route("/invoices/{invoice_id}/send", send_invoice, methods=["POST"])
    app.add_api_route("/invoices/{invoice_id}/send-for-approval", send_for_approval, methods=["POST"])
    app.add_api_route("/invoices/{invoice_id}/payment", setup_payment, methods=["POST"])
    app.add_api_route("/invoices/{invoice_id}/mark-paid", mark_paid, methods=["POST"])
    app.add_api_route("/invoices/{invoice_id}/email", email_invoice, methods=["POST"])
    app.add_api_route("/invoices/{invoice_id}/email-approval", email_approval_request, methods=["POST"])
    app.add_api_route("/invoices/{invoice_id}/history", invoice_history, methods=["GET"])

    app.add_api_route("/approve/{token}", resolve_approval, methods=["GET"])
    app.add_api_route("/approve/{token}/decision", decide_approval, methods=["POST"])

    app.add_api_route("/integrations/clickup/oauth/token", clickup_connect, methods=["POST"])
    app.add_api_route("/integrations/clickup/workspaces", clickup_workspaces, methods=["GET"])
    app.add_api_route("/integrations/clickup/spaces", clickup_spaces, methods=["GET"])
    app.add_api_route("/integrations/clickup/lists", clickup_lists, methods=["GET"])
    app.add_api_route("/integrations/clickup/tasks", clickup_tasks, methods=["GET"])
    app.add_api_route("/integrations/clickup/import", clickup_import, methods=["POST"])

    return app


# ============================================================================
# Health & Session
# ============================================================================


def health_check() -> HealthResponse:
    """Health check endpoint."""
    state = _state()
    return HealthResponse(status="healthy", version=VERSION, open_sessions=len(state.sessions))


def open_session(x_user_id: str = Header(...)) -> dict[str, Any]:
    """Sign in: load the user's collections."""
    return _context(x_user_id).counts()


def close_session(x_user_id: str = Header(...)) -> dict[str, Any]:
    """Sign out: clear the user's session state."""
    return {"closed": _state().close_session(x_user_id.strip())}


# ============================================================================
# Profile
# ============================================================================


def get_profile(x_user_id: str = Header(...)) -> FreelancerProfile:
    profile = _context(x_user_id).profile
    if profile is None:
        raise NotFound("Profile not found")
    return profile


def put_profile(profile: FreelancerProfile, x_user_id: str = Header(...)) -> FreelancerProfile:
    """Create or replace the profile."""
    context = _context(x_user_id)
    if context.profile is None:
        return context.store.create_profile(profile)
    return context.store.update_profile(profile.model_dump())


def delete_profile(x_user_id: str = Header(...)) -> dict[str, Any]:
    _context(x_user_id).store.delete_profile()
    return {"deleted": True}


# ============================================================================
# Tasks & Time Logs
# ============================================================================


def list_tasks(billable: bool = False, x_user_id: str = Header(...)) -> list[Any]:
    context = _context(x_user_id)
    return jsonable_encoder(context.billable_tasks() if billable else context.list_tasks())


def create_task(data: TaskCreate, x_user_id: str = Header(...)) -> Any:
    return jsonable_encoder(_context(x_user_id).store.create_task(data))


def update_task(task_id: str, data: TaskUpdate, x_user_id: str = Header(...)) -> Any:
    return jsonable_encoder(_context(x_user_id).store.update_task(task_id, data))


def delete_task(task_id: str, x_user_id: str = Header(...)) -> dict[str, Any]:
    removed = _context(x_user_id).store.delete_task(task_id)
    return {"deleted": task_id, "timeLogsRemoved": removed}


def list_time_logs(
    unbilled: bool = False,
    task_id: Optional[str] = None,
    x_user_id: str = Header(...),
) -> list[Any]:
    return jsonable_encoder(_context(x_user_id).list_time_logs(task_id=task_id, unbilled=unbilled))


def create_time_log(data: TimeLogCreate, x_user_id: str = Header(...)) -> Any:
    return jsonable_encoder(_context(x_user_id).store.create_time_log(data))


def update_time_log(log_id: str, data: TimeLogUpdate, x_user_id: str = Header(...)) -> Any:
    return jsonable_encoder(_context(x_user_id).store.update_time_log(log_id, data))


def delete_time_log(log_id: str, x_user_id: str = Header(...)) -> dict[str, Any]:
    _context(x_user_id).store.delete_time_log(log_id)
    return {"deleted": log_id}


# ============================================================================
# Timer
# ============================================================================


def _timer_view(context: SessionContext) -> dict[str, Any]:
    return {
        **context.timer.to_dict(),
        "elapsedSeconds": context.timer.elapsed_seconds(),
        "display": context.timer.format_elapsed(),
    }


def get_timer(x_user_id: str = Header(...)) -> dict[str, Any]:
    return _timer_view(_context(x_user_id))


def start_timer(
    request: Optional[TimerStartRequest] = None,
    x_user_id: str = Header(...),
) -> dict[str, Any]:
    context = _context(x_user_id)
    context.start_timer(request.task_id if request else None)
    return _timer_view(context)


def pause_timer(x_user_id: str = Header(...)) -> dict[str, Any]:
    context = _context(x_user_id)
    context.pause_timer()
    return _timer_view(context)


def stop_timer(x_user_id: str = Header(...)) -> dict[str, Any]:
    """Stop the timer and log the tracked time."""
    context = _context(x_user_id)
    time_log = context.stop_timer()
    return {"timeLog": jsonable_encoder(time_log), "timer": _timer_view(context)}


def reset_timer(x_user_id: str = Header(...)) -> dict[str, Any]:
    """Discard the tracked time."""
    context = _context(x_user_id)
    context.reset_timer()
    return _timer_view(context)


# ============================================================================
# Invoices
# ============================================================================


def _invoice_view(context: SessionContext, invoice: Any) -> dict[str, Any]:
    return {
        **jsonable_encoder(invoice),
        "number": invoice.number,
        "availableActions": context.require_engine().available_actions(invoice.id),
    }


def preview_invoice(request: PreviewRequest, x_user_id: str = Header(...)) -> dict[str, Any]:
    return _context(x_user_id).require_engine().preview(request.task_ids).to_dict()


def list_invoices(status: Optional[str] = None, x_user_id: str = Header(...)) -> list[Any]:
    if status and status not in InvoiceState.all_states():
        raise ValidationError(f"Unknown status: {status}", allowed=InvoiceState.all_states())
    return jsonable_encoder(_context(x_user_id).list_invoices(status))


def create_invoice(data: InvoiceCreate, x_user_id: str = Header(...)) -> dict[str, Any]:
    context = _context(x_user_id)
    return _invoice_view(context, context.require_engine().create_invoice(data))


def get_invoice(invoice_id: str, x_user_id: str = Header(...)) -> dict[str, Any]:
    context = _context(x_user_id)
    return _invoice_view(context, context.require_engine().get_invoice(invoice_id))


def update_invoice(invoice_id: str, data: InvoiceUpdate, x_user_id: str = Header(...)) -> dict[str, Any]:
    context = _context(x_user_id)
    return _invoice_view(context, context.require_engine().update_invoice(invoice_id, data))


def delete_invoice(invoice_id: str, x_user_id: str = Header(...)) -> dict[str, Any]:
    _context(x_user_id).require_engine().delete_invoice(invoice_id)
    return {"deleted": invoice_id}


def send_invoice(invoice_id: str, x_user_id: str = Header(...)) -> dict[str, Any]:
    context = _context(x_user_id)
    return _invoice_view(context, context.require_engine().send(invoice_id))


def send_for_approval(invoice_id: str, x_user_id: str = Header(...)) -> dict[str, Any]:
    context = _context(x_user_id)
    return _invoice_view(context, context.require_engine().send_for_approval(invoice_id))


def setup_payment(
    invoice_id: str,
    request: PaymentSetupRequest,
    x_user_id: str = Header(...),
) -> dict[str, Any]:
    context = _context(x_user_id)
    invoice = context.require_engine().setup_payment(invoice_id, request.method, request.instructions)
    return _invoice_view(context, invoice)


def mark_paid(invoice_id: str, x_user_id: str = Header(...)) -> dict[str, Any]:
    context = _context(x_user_id)
    return _invoice_view(context, context.require_engine().mark_paid(invoice_id))


def invoice_history(invoice_id: str, x_user_id: str = Header(...)) -> list[dict[str, Any]]:
    return _context(x_user_id).require_engine().history(invoice_id)


async def email_invoice(
    invoice_id: str,
    request: Optional[EmailRequest] = None,
    x_user_id: str = Header(...),
) -> dict[str, Any]:
    """E-mail the invoice; a delivered e-mail moves a draft to sent."""
    context = _context(x_user_id)
    request = request or EmailRequest()
    result = await _state().dispatcher_for(context).email_invoice(
        invoice_id,
        to=request.to,
        subject=request.subject,
        message=request.message,
    )
    return {**result, "invoice": _invoice_view(context, result["invoice"])}


async def email_approval_request(invoice_id: str, x_user_id: str = Header(...)) -> dict[str, Any]:
    context = _context(x_user_id)
    result = await _state().dispatcher_for(context).email_approval_request(invoice_id)
    return {**result, "invoice": _invoice_view(context, result["invoice"])}


# ============================================================================
# Client Approval
# ============================================================================


def _approval_context(token: str) -> SessionContext:
    """Find the invoice owner's context from the token alone."""
    state = _state()
    parsed = parse_approval_token(token)
    owner_id = owner_of_invoice(parsed[0]) if parsed else None
    if not owner_id:
        raise NotFound("Approval link is invalid or has expired")
    # Reuse an open session so its cached collections see the decision.
    return state.sessions.get(owner_id) or state.new_context(owner_id).open()


def _release(context: SessionContext) -> None:
    if context.owner_id not in _state().sessions:
        context.close()


def resolve_approval(token: str) -> Any:
    """Invoice, profile and task breakdown for the client."""
    context = _approval_context(token)
    try:
        return jsonable_encoder(context.approval_session().resolve(token))
    finally:
        _release(context)


def decide_approval(token: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Apply the client's approve/reject decision."""
    try:
        decision = _decision_adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            "Decision must be approve (with signature) or reject (with reason)",
            errors=e.errors(include_url=False, include_context=False),
        ) from e

    context = _approval_context(token)
    try:
        invoice = context.approval_session().decide(token, decision)
    finally:
        _release(context)
    return {"status": invoice.status.value, "invoice": jsonable_encoder(invoice)}


# ============================================================================
# ClickUp
# ============================================================================


async def _clickup_call(context: SessionContext, method: str, *args: Any) -> Any:
    if not context.clickup_token:
        raise ValidationError("Not connected to ClickUp", fields=["clickup"])
    client = _state().clickup_client(context.clickup_token)
    try:
        return await getattr(client, method)(*args)
    except ClickUpClientError as e:
        logger.error(f"ClickUp {method} failed: {e}")
        raise UpstreamFailure(f"ClickUp request failed: {e}", service="clickup", status_code=e.status_code) from e
    finally:
        await client.close()


async def clickup_connect(request: ClickUpCodeRequest, x_user_id: str = Header(...)) -> dict[str, Any]:
    """Exchange the OAuth code and keep the token on the session."""
    context = _context(x_user_id)
    client = _state().clickup_client()
    try:
        context.clickup_token = await client.exchange_code(request.code)
    except ClickUpClientError as e:
        logger.error(f"ClickUp connection failed: {e}")
        raise UpstreamFailure(f"ClickUp connection failed: {e}", service="clickup", status_code=e.status_code) from e
    finally:
        await client.close()
    return {"connected": True}


async def clickup_workspaces(x_user_id: str = Header(...)) -> list[dict[str, Any]]:
    return await _clickup_call(_context(x_user_id), "list_workspaces")


async def clickup_spaces(team_id: str, x_user_id: str = Header(...)) -> list[dict[str, Any]]:
    return await _clickup_call(_context(x_user_id), "list_spaces", team_id)


async def clickup_lists(space_id: str, x_user_id: str = Header(...)) -> list[dict[str, Any]]:
    return await _clickup_call(_context(x_user_id), "list_lists", space_id)


async def clickup_tasks(list_id: str, x_user_id: str = Header(...)) -> list[dict[str, Any]]:
    return await _clickup_call(_context(x_user_id), "list_tasks", list_id)


async def clickup_import(request: ClickUpImportRequest, x_user_id: str = Header(...)) -> list[Any]:
    """Create tasks from a ClickUp list at the given or default hourly rate."""
    context = _context(x_user_id)
    remote_tasks = await _clickup_call(context, "list_tasks", request.list_id)

    if request.task_ids is not None:
        wanted = set(request.task_ids)
        remote_tasks = [task for task in remote_tasks if task.get("id") in wanted]

    rate = request.rate
    if rate is None:
        rate = context.profile.default_hourly_rate if context.profile else Decimal("0")

    created = [
        context.store.create_task(to_task_create(task, rate, request.list_name))
        for task in remote_tasks
    ]
    logger.info(f"Imported {len(created)} ClickUp task(s) for {context.owner_id}")
    return jsonable_encoder(created)


# ============================================================================
# App Instance
# ============================================================================


app = create_app()
