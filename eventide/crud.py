"""User and event directories built on the keyed record store."""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from . import store
from .config import settings
from .entities import EVENTS, USERS
from .errors import Forbidden, InvalidInput, NotFound, Unauthenticated
from .identity import IdentityClaim
from .store import State
from .utils import is_str, normalize_emails, parse_instant

ATTENDEE_STATUSES = ("going", "maybe", "not_going")
REQUIRED_EVENT_FIELDS = ("title", "description", "date", "location", "image_url")
EDITABLE_EVENT_FIELDS = REQUIRED_EVENT_FIELDS + ("invited_emails",)
PROFILE_FIELDS = ("name", "avatar_url")
USER_FIELDS = ("id", "name", "email", "avatar_url")

EVENT_NOT_FOUND = "Event not found"


def _uuid() -> str:
    return str(uuid.uuid4())


# -------- users --------


def get_user(session: Session, user_id: str) -> State:
    return store.get_state(session, USERS, user_id)


def get_user_for_identity(session: Session, claim: IdentityClaim) -> State:
    """Return the stored profile for ``claim`` or fail if it never synced."""
    try:
        return get_user(session, claim.subject_id)
    except NotFound as exc:
        raise Unauthenticated("User profile not found; sync the identity first") from exc


def sync_user_from_identity(session: Session, claim: IdentityClaim) -> State:
    """Create the profile on first login; later logins return it unchanged."""
    if store.exists(session, USERS, claim.subject_id):
        return get_user(session, claim.subject_id)
    if is_str(claim.name):
        name = claim.name
    elif is_str(claim.nickname):
        name = claim.nickname
    else:
        name = "New User"
    user = {
        "id": claim.subject_id,
        "name": name,
        "email": claim.email,
        "avatar_url": claim.picture,
    }
    return store.create(session, USERS, user)


def update_user_profile(
    session: Session,
    *,
    actor_id: str,
    user_id: str,
    fields: Mapping[str, Any],
) -> State:
    if actor_id != user_id:
        raise Forbidden("Cannot update another user's profile")
    updates = {name: fields[name] for name in PROFILE_FIELDS if is_str(fields.get(name))}
    if not updates:
        raise InvalidInput("No fields to update provided.")
    if not store.exists(session, USERS, user_id):
        raise NotFound("User not found")
    return store.patch(session, USERS, user_id, updates)


# -------- events --------


def is_visible(state: Mapping[str, Any], user: Mapping[str, Any]) -> bool:
    """Creators and invited emails may see an event; nobody else."""
    if state.get("creator_id") == user.get("id"):
        return True
    email = (user.get("email") or "").strip().lower()
    return bool(email) and email in normalize_emails(state.get("invited_emails"))


def _placeholder_creator(creator_id: str) -> State:
    return {"id": creator_id, "name": "Unknown", "email": "", "avatar_url": None}


def resolve_creators(session: Session, creator_ids: Iterable[str]) -> dict[str, State]:
    """Look up creators in one batch; unknown ids get a placeholder profile."""
    unique_ids = list(dict.fromkeys(creator_ids))
    found = store.get_many(session, USERS, unique_ids)
    return {
        creator_id: found.get(creator_id) or _placeholder_creator(creator_id)
        for creator_id in unique_ids
    }


def project_event(state: Mapping[str, Any], creator: Mapping[str, Any]) -> State:
    """Replace ``creator_id`` with the resolved creator profile."""
    event = {key: value for key, value in state.items() if key != "creator_id"}
    event["creator"] = dict(creator)
    return event


def _project_with_lookup(session: Session, state: Mapping[str, Any]) -> State:
    creator_id = state["creator_id"]
    return project_event(state, resolve_creators(session, [creator_id])[creator_id])


def _event_sort_key(event: Mapping[str, Any]) -> datetime:
    try:
        return parse_instant(event.get("date"))
    except (TypeError, ValueError):
        return datetime.min.replace(tzinfo=UTC)


def _load_event(session: Session, event_id: str) -> State:
    try:
        return store.get_state(session, EVENTS, event_id)
    except NotFound as exc:
        raise NotFound(EVENT_NOT_FOUND) from exc


def list_visible_events(session: Session, user: Mapping[str, Any]) -> list[State]:
    """Events ``user`` may see, newest date first, with creators resolved."""
    visible = [
        state for state in store.list_states(session, EVENTS) if is_visible(state, user)
    ]
    creators = resolve_creators(session, (state["creator_id"] for state in visible))
    events = [project_event(state, creators[state["creator_id"]]) for state in visible]
    events.sort(key=_event_sort_key, reverse=True)
    return events


def get_visible_event(session: Session, user: Mapping[str, Any], event_id: str) -> State:
    # Missing and hidden events fail identically.
    state = _load_event(session, event_id)
    if not is_visible(state, user):
        raise NotFound(EVENT_NOT_FOUND)
    return _project_with_lookup(session, state)


def _clean_event_fields(fields: Mapping[str, Any], *, partial: bool) -> State:
    cleaned: State = {}
    for name in REQUIRED_EVENT_FIELDS:
        value = fields.get(name)
        if value is None and partial:
            continue
        if not is_str(value) or not value.strip():
            raise InvalidInput("Missing required event fields")
        cleaned[name] = value
    if "date" in cleaned:
        try:
            parse_instant(cleaned["date"])
        except ValueError as exc:
            raise InvalidInput("date must be an ISO-8601 instant") from exc

    emails = fields.get("invited_emails")
    if emails is None:
        if not partial:
            cleaned["invited_emails"] = []
    elif isinstance(emails, str) or not all(isinstance(email, str) for email in emails):
        raise InvalidInput("invited_emails must be a list of email addresses")
    else:
        cleaned["invited_emails"] = normalize_emails(emails)
    return cleaned


def _attendee(user: Mapping[str, Any], status: str, adults: int, kids: int) -> State:
    attendee = {name: user.get(name) for name in USER_FIELDS}
    attendee.update(status=status, adults=adults, kids=kids)
    return attendee


def create_event(session: Session, user: Mapping[str, Any], fields: Mapping[str, Any]) -> State:
    """Create an event owned by ``user``, who becomes its first attendee."""
    cleaned = _clean_event_fields(fields, partial=False)
    state = {
        "id": _uuid(),
        **cleaned,
        "creator_id": user["id"],
        "attendees": [_attendee(user, "going", 1, 0)],
    }
    stored = store.create(session, EVENTS, state)
    return project_event(stored, user)


def _require_owner(session: Session, user: Mapping[str, Any], event_id: str) -> State:
    state = _load_event(session, event_id)
    if state["creator_id"] != user["id"]:
        raise Forbidden("Only the event creator can change this event")
    return state


def update_event(
    session: Session,
    user: Mapping[str, Any],
    event_id: str,
    fields: Mapping[str, Any],
) -> State:
    """Patch the editable fields; attendees and ownership never change here."""
    state = _require_owner(session, user, event_id)
    editable = {name: fields[name] for name in EDITABLE_EVENT_FIELDS if name in fields}
    cleaned = _clean_event_fields(editable, partial=True)
    if cleaned:
        state = store.patch(session, EVENTS, event_id, cleaned)
    return project_event(state, user)


def delete_event(session: Session, user: Mapping[str, Any], event_id: str) -> bool:
    _require_owner(session, user, event_id)
    return store.delete(session, EVENTS, event_id)


def merge_attendee(
    attendees: Sequence[Mapping[str, Any]],
    user: Mapping[str, Any],
    status: str,
    adults: int,
    kids: int,
) -> list[State]:
    """Drop ``user``'s previous entry and append a fresh one.

    Other attendees keep their order. The new entry carries the user's
    current profile fields.
    """
    merged = [dict(attendee) for attendee in attendees if attendee.get("id") != user["id"]]
    merged.append(_attendee(user, status, adults, kids))
    return merged


def _validate_rsvp(status: Any, adults: Any, kids: Any) -> None:
    if status not in ATTENDEE_STATUSES:
        raise InvalidInput(f"status must be one of {', '.join(ATTENDEE_STATUSES)}")
    for count in (adults, kids):
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise InvalidInput("adults and kids must be non-negative numbers")


def rsvp_event(
    session: Session,
    user: Mapping[str, Any],
    event_id: str,
    *,
    status: str,
    adults: int,
    kids: int,
) -> State:
    """Record ``user``'s response on the event's attendee list.

    Any authenticated user holding the event id may respond unless
    ``rsvp_requires_invite`` is enabled, in which case the read visibility
    rule applies.
    """
    _validate_rsvp(status, adults, kids)
    state = _load_event(session, event_id)
    if settings.rsvp_requires_invite and not is_visible(state, user):
        raise NotFound(EVENT_NOT_FOUND)

    def _apply(current: State) -> State:
        attendees = merge_attendee(current.get("attendees") or [], user, status, adults, kids)
        return {**current, "attendees": attendees}

    try:
        updated = store.mutate(session, EVENTS, event_id, _apply)
    except NotFound as exc:
        raise NotFound(EVENT_NOT_FOUND) from exc
    return _project_with_lookup(session, updated)
