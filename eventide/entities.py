"""Entity collections stored through :mod:`eventide.store`."""

from __future__ import annotations

from .store import EntitySchema

MOCK_USERS = (
    {
        "id": "user-1",
        "name": "Alex Starr",
        "email": "alex@eventide.app",
        "avatar_url": "https://i.pravatar.cc/150?u=alexstarr",
    },
    {
        "id": "user-2",
        "name": "Casey Jordan",
        "email": "casey@eventide.app",
        "avatar_url": "https://i.pravatar.cc/150?u=caseyjordan",
    },
    {
        "id": "user-3",
        "name": "Riley Quinn",
        "email": "riley@eventide.app",
        "avatar_url": "https://i.pravatar.cc/150?u=rileyquinn",
    },
    {
        "id": "user-4",
        "name": "Morgan Lee",
        "email": "morgan@eventide.app",
        "avatar_url": "https://i.pravatar.cc/150?u=morganlee",
    },
    {
        "id": "user-5",
        "name": "Jamie Lane",
        "email": "jamie@eventide.app",
        "avatar_url": "https://i.pravatar.cc/150?u=jamielane",
    },
)

USERS = EntitySchema(
    entity_name="eventide-user",
    index_name="eventide-users",
    initial_state={"id": "", "name": "", "email": "", "avatar_url": None},
    seed_data=MOCK_USERS,
)

EVENTS = EntitySchema(
    entity_name="eventide-event",
    index_name="eventide-events",
    initial_state={
        "id": "",
        "title": "",
        "description": "",
        "date": "",
        "location": "",
        "image_url": "",
        "creator_id": "",
        "attendees": [],
        "invited_emails": [],
    },
)
