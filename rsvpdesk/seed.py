"""Development helpers for populating fake users, events and chats."""

from __future__ import annotations

import random
from datetime import timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .chat import post_message, set_presence, start_or_append
from .database import get_session
from .errors import CapacityExceededError, DeadlinePassedError, ValidationError
from .events import approve_or_reject, create_event, submit_rsvp
from .models import ROLE_ADMIN, Event, User
from .notifications import LoggingNotifier
from .storage import init_db
from .users import create_user
from .utils import utctoday

SEED_PASSWORD = "changeme123"

_event_types = [
    "Mixer",
    "Hangout",
    "Workshop",
    "Field Trip",
    "Meet & Greet",
    "Dinner",
    "Discussion",
]
_categories = ["social", "tech", "outdoors", "food", "music", "community"]
_rsvp_statuses = ["attending", "attending", "attending", "maybe", "maybe", "declined"]
_times = ["10:00", "12:30", "15:00", "18:00", "19:30"]


def seed_fake_data(
    *,
    user_count: int = 8,
    event_count: int = 6,
    max_rsvps_per_event: int = 4,
) -> dict[str, int]:
    """Populate the database with synthetic users, events, RSVPs and chats."""
    if user_count < 1:
        raise ValueError("user_count must be >= 1")
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")

    init_db()
    fake = Faker()
    notifier = LoggingNotifier()
    stats = {"users": 0, "events": 0, "rsvps": 0, "chats": 0}

    with get_session() as session:
        admin = _create_user(session, fake, role=ROLE_ADMIN)
        users = [_create_user(session, fake) for _ in range(user_count)]
        stats["users"] = len(users) + 1

        for _ in range(event_count):
            organizer = random.choice([admin, *users])
            event = _create_event(session, fake, organizer, notifier)
            if event.status == "pending_approval" and random.random() < 0.7:
                approve_or_reject(session, admin, event.id, "upcoming", notifier=notifier)
            stats["events"] += 1
            stats["rsvps"] += _create_rsvps(session, event, users, max_rsvps_per_event)

        set_presence(session, admin, True)
        for user in random.sample(users, k=max(1, len(users) // 2)):
            chat, _, _ = start_or_append(session, user, fake.sentence())
            post_message(session, admin, chat.id, fake.sentence())
            stats["chats"] += 1

    return stats


def _create_user(session: Session, fake: Faker, *, role: str = "user") -> User:
    for _ in range(20):
        email = fake.unique.email()
        try:
            return create_user(
                session,
                name=fake.name(),
                email=email,
                password=SEED_PASSWORD,
                role=role,
                phone=fake.phone_number()[:32],
                address=fake.address().replace("\n", ", ")[:255],
                receive_email_notifications=random.random() < 0.8,
            )
        except ValidationError:
            continue
    raise RuntimeError("Failed to create a unique seed user")


def _create_event(
    session: Session, fake: Faker, organizer: User, notifier: LoggingNotifier
) -> Event:
    day = utctoday() + timedelta(days=random.randint(0, 45))
    deadline = None
    if random.random() < 0.3:
        deadline = fake.date_time_between(start_date="now", end_date="+30d")
    return create_event(
        session,
        organizer,
        title=f"{fake.city()} {random.choice(_event_types)}",
        description="\n\n".join(fake.paragraphs(nb=2)),
        date=day,
        time=random.choice(_times),
        location=fake.address().replace("\n", ", "),
        capacity=random.randint(5, 40),
        is_private=random.random() < 0.1,
        registration_deadline=deadline,
        categories=random.sample(_categories, k=random.randint(1, 2)),
        invited_emails=[fake.email() for _ in range(random.randint(0, 3))],
        notifier=notifier,
    )


def _create_rsvps(
    session: Session, event: Event, users: list[User], max_rsvps: int
) -> int:
    if max_rsvps <= 0:
        return 0
    total = 0
    for user in random.sample(users, k=min(len(users), random.randint(0, max_rsvps))):
        try:
            submit_rsvp(
                session,
                user,
                event.id,
                random.choice(_rsvp_statuses),
                additional_guests=random.randint(0, 2),
            )
        except (CapacityExceededError, DeadlinePassedError):
            continue
        total += 1
    return total
