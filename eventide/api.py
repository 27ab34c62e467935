"""FastAPI application for Eventide."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any, Mapping
import tomllib

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import crud
from .database import SessionLocal
from .errors import (
    AlreadyExists,
    EventideError,
    Forbidden,
    InvalidInput,
    NotFound,
    Unauthenticated,
    WriteConflict,
)
from .identity import IdentityClaim, verify_bearer_token
from .storage import init_db

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

ERROR_STATUS: dict[type[EventideError], int] = {
    Unauthenticated: 401,
    Forbidden: 403,
    NotFound: 404,
    InvalidInput: 400,
    AlreadyExists: 409,
    WriteConflict: 409,
}


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventide")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(title="Eventide", version=APP_VERSION, lifespan=lifespan)


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


def _ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data}, status_code=status_code)


def _fail(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "error": error, **extra}, status_code=status_code)


@app.exception_handler(EventideError)
async def eventide_error_handler(request: Request, exc: EventideError):
    status = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        500,
    )
    if status == 409:
        logger.warning(
            "Conflict while handling %s %s: %s", request.method, request.url.path, exc
        )
    headers = {"WWW-Authenticate": "Bearer"} if status == 401 else None
    response = _fail(status, str(exc))
    if headers:
        response.headers.update(headers)
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else "Something went wrong."
    return _fail(exc.status_code, detail)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        return _fail(
            503,
            "The database is busy at the moment. Please wait a few seconds and try again.",
        )
    logger.error(
        "Operational database error on %s %s: %s",
        request.method,
        request.url.path,
        raw,
    )
    return _fail(500, "We hit a database issue. Please try again.")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return _fail(400, "Invalid request payload", detail=jsonable_encoder(exc.errors()))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return _fail(500, "Internal server error")


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_identity(request: Request) -> IdentityClaim:
    token = _get_bearer_token(request)
    if not token:
        raise Unauthenticated("Missing bearer token")
    return verify_bearer_token(token)


def get_current_user(
    identity: IdentityClaim = Depends(get_identity),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return crud.get_user_for_identity(db, identity)


# -------- payloads --------


class UserUpdatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    avatar_url: str | None = Field(None, alias="avatarUrl")


class EventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str | None = None
    description: str | None = None
    date: str | None = Field(None, description="ISO-8601 instant")
    location: str | None = None
    image_url: str | None = Field(None, alias="imageUrl")
    invited_emails: list[str] | None = Field(None, alias="invitedEmails")


class RSVPPayload(BaseModel):
    status: str | None = None
    adults: StrictInt | None = None
    kids: StrictInt | None = None


# -------- serializers --------


def _serialize_user(user: Mapping[str, Any]) -> dict[str, Any]:
    payload = {
        "id": user.get("id"),
        "name": user.get("name"),
        "email": user.get("email"),
    }
    if user.get("avatar_url"):
        payload["avatarUrl"] = user["avatar_url"]
    return payload


def _serialize_attendee(attendee: Mapping[str, Any]) -> dict[str, Any]:
    payload = _serialize_user(attendee)
    payload.update(
        status=attendee.get("status"),
        adults=attendee.get("adults", 0),
        kids=attendee.get("kids", 0),
    )
    return payload


def _serialize_event(event: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": event["id"],
        "title": event.get("title"),
        "description": event.get("description"),
        "date": event.get("date"),
        "location": event.get("location"),
        "imageUrl": event.get("image_url"),
        "creator": _serialize_user(event["creator"]),
        "attendees": [_serialize_attendee(a) for a in event.get("attendees") or []],
        "invitedEmails": list(event.get("invited_emails") or []),
    }


# -------- routes --------


@app.get("/api/health")
def health_check():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/auth/sync")
def sync_identity(
    identity: IdentityClaim = Depends(get_identity),
    db: Session = Depends(get_db),
):
    user = crud.sync_user_from_identity(db, identity)
    return _ok(_serialize_user(user))


@app.put("/api/users/{user_id}")
def update_profile(
    user_id: str,
    payload: UserUpdatePayload,
    identity: IdentityClaim = Depends(get_identity),
    db: Session = Depends(get_db),
):
    user = crud.update_user_profile(
        db,
        actor_id=identity.subject_id,
        user_id=user_id,
        fields=payload.model_dump(exclude_unset=True),
    )
    return _ok(_serialize_user(user))


@app.get("/api/events")
def list_events(
    user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    events = crud.list_visible_events(db, user)
    return _ok([_serialize_event(event) for event in events])


@app.get("/api/events/{event_id}")
def get_event(
    event_id: str,
    user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = crud.get_visible_event(db, user, event_id)
    return _ok(_serialize_event(event))


@app.post("/api/events")
def create_event(
    payload: EventPayload,
    user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = crud.create_event(db, user, payload.model_dump())
    logger.info("Event %s created by %s", event["id"], user["id"])
    return _ok(_serialize_event(event))


@app.put("/api/events/{event_id}")
def update_event(
    event_id: str,
    payload: EventPayload,
    user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = crud.update_event(db, user, event_id, payload.model_dump(exclude_unset=True))
    return _ok(_serialize_event(event))


@app.delete("/api/events/{event_id}")
def delete_event(
    event_id: str,
    user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    deleted = crud.delete_event(db, user, event_id)
    logger.info("Event %s deleted by %s", event_id, user["id"])
    return _ok({"id": event_id, "deleted": deleted})


@app.post("/api/events/{event_id}/rsvp")
def rsvp(
    event_id: str,
    payload: RSVPPayload,
    user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = crud.rsvp_event(
        db,
        user,
        event_id,
        status=payload.status,
        adults=payload.adults,
        kids=payload.kids,
    )
    logger.info(
        "RSVP %s (adults=%d, kids=%d) on event %s by %s",
        payload.status,
        payload.adults,
        payload.kids,
        event_id,
        user["id"],
    )
    return _ok(_serialize_event(event))
