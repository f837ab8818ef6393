"""FastAPI application for rsvpqueue."""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .crud import (
    EventNotFoundError,
    RosterConflictError,
    RsvpOutcome,
    create_event,
    find_open_invitation_by_phone,
    get_event,
    load_snapshot,
    reorder_invitees,
    respond,
    snapshot_event,
    to_roster_invitee,
)
from .database import SessionLocal
from .engine import RsvpErrorKind
from .models import Event, Invitee
from .notifications import (
    build_invitation,
    dispatch_all,
    notifications_for_delta,
    parse_reply_status,
)
from .roster import EventSnapshot, Invitee as RosterInvitee, InviteeStatus, RsvpAction
from .scheduler import start_scheduler, stop_scheduler
from .status import project
from .storage import build_token_signer, fetch_root_token, fetch_webhook_secret, init_db
from .sweep import run_auto_promote_sweep
from .tokens import INVALID_LINK_MESSAGE, InvalidRsvpToken
from .utils import ensure_aware, to_naive_utc, utcnow

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

INVALID_LINK_ERROR = {"error": "invalid-link", "message": INVALID_LINK_MESSAGE}


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("rsvpqueue")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project_table = data.get("project") or {}
            return str(project_table.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="rsvpqueue", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


class InviteePayload(BaseModel):
    name: str = ""
    email: str | None = None
    phone: str | None = None
    priority: int | None = None


class EventCreatePayload(BaseModel):
    title: str
    scheduled_at: str = Field(..., description="ISO datetime; naive values are UTC")
    timezone: str = "UTC"
    description: str | None = None
    location: str | None = None
    organizer_name: str | None = None
    invite_mode: str = "priority"
    spots: int | None = Field(None, ge=1)
    auto_promote_after_minutes: int | None = None
    invitees: list[InviteePayload] = Field(default_factory=list)


class ResponsePayload(BaseModel):
    identity: str
    action: RsvpAction


class ReorderPayload(BaseModel):
    invitee_ids: list[str]


class SmsReplyPayload(BaseModel):
    from_phone: str
    body: str


def _parse_datetime(raw: str) -> datetime:
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid datetime") from exc


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(RosterConflictError)
async def roster_conflict_handler(request: Request, exc: RosterConflictError):
    logger.warning("Roster conflict on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        {"detail": "The invitation list changed while saving. Please try again."},
        status_code=409,
    )


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        return JSONResponse(
            {"detail": "The database is busy at the moment. Please try again."},
            status_code=503,
        )
    logger.error(
        "Operational database error on %s %s: %s",
        request.method,
        request.url.path,
        raw,
    )
    return JSONResponse({"detail": "We hit a database issue. Please try again."}, status_code=500)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def _require_root(request: Request) -> None:
    token = _get_bearer_token(request)
    if not token or token != fetch_root_token():
        raise HTTPException(status_code=403, detail="Forbidden")


def _require_webhook(request: Request) -> None:
    token = _get_bearer_token(request)
    if not token or not hmac.compare_digest(
        token.encode(), fetch_webhook_secret().encode()
    ):
        raise HTTPException(status_code=403, detail="Forbidden")


def _ensure_event(db: Session, event_id: str) -> Event:
    event = get_event(db, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _require_organizer(db: Session, event_id: str, request: Request) -> Event:
    event = _ensure_event(db, event_id)
    token = _get_bearer_token(request)
    if token and token == event.admin_token:
        return event
    if token and token == fetch_root_token():
        return event
    raise HTTPException(status_code=403, detail="Invalid admin token")


def _isoformat(value: datetime | None) -> str | None:
    return ensure_aware(value).isoformat() if value else None


def _serialize_invitee(invitee: RosterInvitee):
    return {
        "id": invitee.id,
        "name": invitee.name,
        "email": invitee.email,
        "phone": invitee.phone,
        "priority": invitee.priority,
        "status": invitee.status.value,
        "invited_at": _isoformat(invitee.invited_at),
        "responded_at": _isoformat(invitee.responded_at),
    }


def _serialize_event(event: Event, snapshot: EventSnapshot, *, include_admin_token: bool = False):
    accepted = sum(1 for i in snapshot.invitees if i.status is InviteeStatus.ACCEPTED)
    payload = {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "organizer_name": event.organizer_name,
        "scheduled_at": _isoformat(event.scheduled_at),
        "timezone": event.timezone,
        "invite_mode": snapshot.invite_mode.value,
        "spots": snapshot.spots,
        "spots_filled": accepted,
        "auto_promote_after_minutes": snapshot.auto_promote_after_minutes,
        "version": snapshot.version,
        "statuses": project(snapshot.invitees, snapshot.scheduled_at, utcnow()).as_dict(),
        "invitees": [_serialize_invitee(i) for i in snapshot.invitees],
        "created_at": _isoformat(event.created_at),
    }
    if include_admin_token:
        payload["admin_token"] = event.admin_token
    return payload


def _dispatch_outcome(outcome: RsvpOutcome) -> int:
    if not outcome.delta:
        return 0
    notifications = notifications_for_delta(
        outcome.snapshot.event_id,
        outcome.delta,
        signer=build_token_signer(),
        base_url=settings.public_base_url,
    )
    return dispatch_all(notifications)


def _verdict_response(event_id: str, outcome: RsvpOutcome) -> JSONResponse:
    verdict = outcome.verdict
    payload = {"event_id": event_id, **verdict.as_dict()}
    if verdict.error is RsvpErrorKind.NOT_FOUND:
        return JSONResponse(payload, status_code=404)
    return JSONResponse(payload, status_code=200)


def _record_response(
    db: Session, event_id: str, identity: str, action: RsvpAction
) -> JSONResponse:
    try:
        outcome = respond(db, event_id, identity, action)
    except EventNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Event not found") from exc
    db.commit()
    if outcome.verdict.success:
        logger.info(
            "Recorded %s for event %s by %s",
            action.value,
            event_id,
            outcome.verdict.target.name if outcome.verdict.target else identity,
        )
    _dispatch_outcome(outcome)
    return _verdict_response(event_id, outcome)


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/v1/events", status_code=201)
def api_create_event(payload: EventCreatePayload, db: Session = Depends(get_db)):
    scheduled_at = _parse_datetime(payload.scheduled_at)
    invitees = [
        RosterInvitee(
            name=item.name,
            email=item.email,
            phone=item.phone,
            priority=item.priority if item.priority is not None else index,
        )
        for index, item in enumerate(payload.invitees)
    ]
    try:
        event = create_event(
            db,
            title=payload.title,
            scheduled_at=to_naive_utc(scheduled_at),
            timezone=payload.timezone,
            invitees=invitees,
            invite_mode=payload.invite_mode,
            spots=payload.spots,
            auto_promote_after_minutes=payload.auto_promote_after_minutes,
            description=payload.description,
            location=payload.location,
            organizer_name=payload.organizer_name,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    snapshot = snapshot_event(event)
    signer = build_token_signer()
    invitations = [
        build_invitation(event.id, invitee, signer=signer, base_url=settings.public_base_url)
        for invitee in snapshot.invitees
        if invitee.status is InviteeStatus.INVITED
    ]
    dispatch_all(invitations)
    logger.info(
        "Created event %s (%s) in %s mode with %d invitees",
        event.id,
        event.title,
        snapshot.invite_mode.value,
        len(snapshot.invitees),
    )
    return {"event": _serialize_event(event, snapshot, include_admin_token=True)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    event = _require_organizer(db, event_id, request)
    return {"event": _serialize_event(event, load_snapshot(db, event_id))}


@app.post("/api/v1/events/{event_id}/responses")
def api_submit_response(
    event_id: str,
    payload: ResponsePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    _require_organizer(db, event_id, request)
    return _record_response(db, event_id, payload.identity, payload.action)


@app.put("/api/v1/events/{event_id}/invitees/order")
def api_reorder_invitees(
    event_id: str,
    payload: ReorderPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _require_organizer(db, event_id, request)
    try:
        snapshot = reorder_invitees(db, event_id, payload.invitee_ids)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"event": _serialize_event(event, snapshot)}


@app.post("/api/v1/events/{event_id}/invitees/{invitee_id}/resend")
def api_resend_invitation(
    event_id: str,
    invitee_id: str,
    request: Request,
    db: Session = Depends(get_db),
):
    _require_organizer(db, event_id, request)
    row = db.get(Invitee, invitee_id)
    if not row or row.event_id != event_id:
        raise HTTPException(status_code=404, detail="Invitee not found")
    if row.status != InviteeStatus.INVITED.value:
        raise HTTPException(
            status_code=400, detail="Only invitees awaiting a response can be re-sent links"
        )
    notification = build_invitation(
        event_id,
        to_roster_invitee(row),
        signer=build_token_signer(),
        base_url=settings.public_base_url,
    )
    dispatch_all([notification])
    return {"links": notification.links}


@app.get("/rsvp/{token}")
def rsvp_link(token: str, db: Session = Depends(get_db)):
    try:
        payload = build_token_signer().verify(token)
    except InvalidRsvpToken:
        return JSONResponse(INVALID_LINK_ERROR, status_code=400)
    return _record_response(db, payload.event_id, payload.invitee_identity, payload.action)


@app.post("/api/v1/sms/reply")
def sms_reply(payload: SmsReplyPayload, request: Request, db: Session = Depends(get_db)):
    _require_webhook(request)
    action = parse_reply_status(payload.body)
    if action is None:
        return {"outcome": "unrecognized"}
    invitation = find_open_invitation_by_phone(db, payload.from_phone)
    if invitation is None:
        return {"outcome": "no-pending-invitation"}
    return _record_response(db, invitation.event_id, invitation.phone, action)


@app.post("/api/v1/sweep")
def api_run_sweep(request: Request):
    _require_root(request)
    return run_auto_promote_sweep()
