"""Development helpers for populating fake users, events and RSVPs."""

from __future__ import annotations

import random
import uuid
from datetime import UTC, datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from . import store
from .crud import ATTENDEE_STATUSES, create_event, rsvp_event
from .database import get_session
from .entities import USERS
from .storage import init_db

_event_types = [
    "Picnic",
    "Birthday Party",
    "Game Night",
    "Potluck",
    "Book Club",
    "Hike",
    "Movie Night",
    "Barbecue",
]


def seed_fake_data(
    *,
    user_count: int = 8,
    event_count: int = 6,
    max_rsvps_per_event: int = 4,
) -> dict[str, int]:
    """Populate the database with synthetic users, events and RSVPs."""
    if user_count < 1:
        raise ValueError("user_count must be >= 1")
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")

    init_db()
    fake = Faker()
    stats = {"users": 0, "events": 0, "rsvps": 0}

    with get_session() as session:
        users = [_create_user(session, fake) for _ in range(user_count)]
        stats["users"] = len(users)
        for _ in range(event_count):
            creator = random.choice(users)
            guests = [user for user in users if user["id"] != creator["id"]]
            invited = random.sample(guests, k=random.randint(0, len(guests)))
            event = _create_event(session, fake, creator=creator, invited=invited)
            stats["events"] += 1
            stats["rsvps"] += _create_rsvps(session, event["id"], invited, max_rsvps_per_event)

    return stats


def _create_user(session: Session, fake: Faker) -> dict:
    profile = fake.simple_profile()
    user_id = f"seed|{uuid.uuid4().hex[:12]}"
    return store.create(
        session,
        USERS,
        {
            "id": user_id,
            "name": profile["name"],
            "email": profile["mail"].lower(),
            "avatar_url": f"https://i.pravatar.cc/150?u={user_id}",
        },
    )


def _create_event(session: Session, fake: Faker, *, creator: dict, invited: list[dict]) -> dict:
    return create_event(
        session,
        creator,
        {
            "title": f"{fake.city()} {random.choice(_event_types)}",
            "description": "\n\n".join(fake.paragraphs(nb=2)),
            "date": _random_date().isoformat(),
            "location": fake.address().replace("\n", ", "),
            "image_url": fake.image_url(),
            "invited_emails": [user["email"] for user in invited],
        },
    )


def _random_date() -> datetime:
    now = datetime.now(UTC).replace(microsecond=0)
    return now + timedelta(days=random.randint(-7, 45), minutes=random.randint(0, 23 * 60))


def _create_rsvps(session: Session, event_id: str, invited: list[dict], max_rsvps: int) -> int:
    if max_rsvps <= 0 or not invited:
        return 0
    responders = random.sample(invited, k=random.randint(0, min(max_rsvps, len(invited))))
    for user in responders:
        rsvp_event(
            session,
            user,
            event_id,
            status=random.choice(ATTENDEE_STATUSES),
            adults=random.randint(1, 3),
            kids=random.randint(0, 3),
        )
    return len(responders)
