"""Event lifecycle and RSVP handling.

Events move from ``pending_approval`` to ``upcoming`` or ``rejected`` only
through :func:`approve_or_reject`. RSVPs are one row per (event, user) and
are capacity checked against the attending party sizes of everyone else.
The capacity check runs under the event's optimistic version column, so a
concurrent RSVP that lands first forces a re-read and a fresh check.
"""

from __future__ import annotations

import logging
from datetime import date as date_type, datetime
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .authz import authorizer
from .config import settings
from .errors import (
    CapacityExceededError,
    ConflictError,
    DeadlinePassedError,
    NotFoundError,
    NotificationError,
    ValidationError,
)
from .models import ATTENDANCE_STATUSES, EVENT_STATUSES, Attendance, Event, InvitedEmail, User
from .notifications import Invitation, Notifier, build_notifier
from .users import get_user_profile, users_with_notifications
from .utils import (
    is_object_id,
    normalize_invited_emails,
    schema_error_message,
    to_naive_utc,
    utcnow,
    utctoday,
)

logger = logging.getLogger("uvicorn.error")

APPROVAL_DECISIONS = {"upcoming", "rejected"}
HIDDEN_STATUSES = {"pending_approval", "rejected"}
TITLE_MAX_LENGTH = 100


class EventPatch(BaseModel):
    """Fields an organizer or admin may change after creation."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(None, max_length=TITLE_MAX_LENGTH)
    description: str | None = None
    date: date_type | None = None
    time: str | None = None
    location: str | None = None
    capacity: int | None = Field(None, ge=1)
    image: str | None = None
    is_private: bool | None = None
    registration_deadline: datetime | None = None
    categories: list[str] | None = None
    invited_emails: str | list[str] | None = None


REQUIRED_PATCH_FIELDS = {"title", "description", "date", "time", "location", "capacity"}


def _require_text(value: str | None, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"Please provide an event {label}")
    return cleaned


def _normalize_categories(raw: Sequence[str] | None) -> list[str]:
    categories: list[str] = []
    for item in raw or []:
        cleaned = (item or "").strip()
        if cleaned and cleaned not in categories:
            categories.append(cleaned)
    return categories


def get_event_or_404(session: Session, event_id: str) -> Event:
    if not is_object_id(event_id):
        raise ValidationError("Invalid event ID")
    event = session.get(Event, event_id)
    if not event:
        raise NotFoundError("Event not found")
    return event


def attending_headcount(event: Event, *, exclude_user_id: str | None = None) -> int:
    return sum(
        (a.additional_guests or 0) + 1
        for a in event.attendees
        if a.status == "attending"
        and (exclude_user_id is None or a.user_id != exclude_user_id)
    )


def available_spots(event: Event) -> int:
    return max(event.capacity - event.attending_headcount, 0)


def _replace_invites(event: Event, emails: list[str]) -> None:
    """Replace the invite list; addresses already on it keep their sent flag."""
    current = {invite.email.lower(): invite for invite in event.invited_emails}
    retained: list[InvitedEmail] = []
    for email in emails:
        invite = current.get(email.lower())
        if invite is None:
            invite = InvitedEmail(email=email, invited_at=utcnow(), notification_sent=False)
        retained.append(invite)
    event.invited_emails = retained


def _dispatch_invitations(
    session: Session,
    event: Event,
    invites: Sequence[InvitedEmail],
    notifier: Notifier,
) -> bool:
    """Send one batched invitation; failures are logged, never raised."""
    if not invites:
        return False
    recipients = [invite.email for invite in invites]
    invitation = Invitation.for_event(event, app_url=settings.app_url)
    try:
        notifier.send_invitation(invitation, recipients)
    except NotificationError:
        logger.warning(
            "Invitations for event %s were not sent; %d invitee(s) stay pending",
            event.id,
            len(recipients),
        )
        return False
    for invite in invites:
        invite.notification_sent = True
    session.flush()
    return True


def create_event(
    session: Session,
    submitter: User,
    *,
    title: str,
    description: str,
    date: date_type,
    time: str,
    location: str,
    capacity: int,
    image: str | None = None,
    is_private: bool = False,
    registration_deadline: datetime | None = None,
    categories: Sequence[str] | None = None,
    invited_emails: str | Sequence[str] | None = None,
    notifier: Notifier | None = None,
) -> Event:
    """Create an event; admins publish immediately, everyone else waits for approval."""
    authorizer.require_user(submitter)
    cleaned_title = _require_text(title, "title")
    if len(cleaned_title) > TITLE_MAX_LENGTH:
        raise ValidationError(
            f"Event title cannot be more than {TITLE_MAX_LENGTH} characters"
        )
    if date is None:
        raise ValidationError("Please provide an event date")
    if date < utctoday():
        raise ValidationError("Event date cannot be in the past")
    if capacity is None or isinstance(capacity, bool) or int(capacity) < 1:
        raise ValidationError("Capacity must be a positive number")

    is_admin = authorizer.is_admin(submitter)
    event = Event(
        title=cleaned_title,
        description=_require_text(description, "description"),
        date=date,
        time=_require_text(time, "time"),
        location=_require_text(location, "location"),
        capacity=int(capacity),
        image=(image or "").strip(),
        organizer_id=submitter.id,
        status="upcoming" if is_admin else "pending_approval",
        is_private=bool(is_private),
        registration_deadline=to_naive_utc(registration_deadline),
        categories=_normalize_categories(categories),
    )
    emails = normalize_invited_emails(invited_emails)
    if is_admin and not emails:
        emails = [user.email for user in users_with_notifications(session)]
    _replace_invites(event, emails)
    session.add(event)
    session.flush()
    logger.info(
        "Created event %s (%s) by %s with status %s",
        event.id,
        event.title,
        submitter.id,
        event.status,
    )

    if event.status == "upcoming":
        _dispatch_invitations(
            session, event, list(event.invited_emails), notifier or build_notifier()
        )
    return event


def list_events(
    session: Session,
    actor: User | None,
    *,
    status: str | None = None,
    organizer_id: str | None = None,
    category: str | None = None,
) -> list[Event]:
    stmt = select(Event).order_by(Event.date.asc(), Event.time.asc())
    is_admin = authorizer.is_admin(actor)
    if status:
        if status not in EVENT_STATUSES:
            raise ValidationError("Invalid status value")
        stmt = stmt.where(Event.status == status)
        if status in HIDDEN_STATUSES and not is_admin:
            if actor is None:
                return []
            stmt = stmt.where(Event.organizer_id == actor.id)
    elif not is_admin:
        visible = Event.status.not_in(HIDDEN_STATUSES)
        if actor is not None:
            visible = visible | (Event.organizer_id == actor.id)
        stmt = stmt.where(visible)
    if organizer_id:
        stmt = stmt.where(Event.organizer_id == organizer_id)

    events = list(session.scalars(stmt).all())
    if category:
        events = [event for event in events if category in (event.categories or [])]
    return events


def _build_pagination(*, page: int, per_page: int, total_events: int) -> dict[str, Any]:
    total_pages = (
        max(1, (total_events + per_page - 1) // per_page) if total_events else 1
    )
    page = max(1, min(page, total_pages)) if total_events else 1
    return {
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "total_events": total_events,
        "has_prev": page > 1,
        "has_next": page < total_pages and total_events > 0,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if page < total_pages and total_events > 0 else None,
    }


def paginate_events(
    session: Session,
    actor: User | None,
    *,
    page: int = 1,
    per_page: int | None = None,
    status: str | None = None,
    organizer_id: str | None = None,
    category: str | None = None,
) -> tuple[list[Event], dict[str, Any]]:
    """Return one page of :func:`list_events` plus its pagination block.

    Pages past the end clamp to the last page.
    """
    per_page = per_page or settings.events_per_page
    if per_page < 1:
        raise ValidationError("per_page must be at least 1")
    matching = list_events(
        session,
        actor,
        status=status,
        organizer_id=organizer_id,
        category=category,
    )
    pagination = _build_pagination(
        page=page, per_page=per_page, total_events=len(matching)
    )
    offset = (pagination["page"] - 1) * per_page
    return matching[offset : offset + per_page], pagination


def get_event(session: Session, event_id: str, actor: User | None = None) -> Event:
    event = get_event_or_404(session, event_id)
    if not authorizer.can_view_event(actor, event):
        raise NotFoundError("Event not found")
    return event


def approve_or_reject(
    session: Session,
    admin: User | None,
    event_id: str,
    decision: str,
    *,
    notifier: Notifier | None = None,
) -> Event:
    authorizer.require_admin(admin, "Only administrators can approve or reject events")
    if decision not in APPROVAL_DECISIONS:
        raise ValidationError("Invalid status value")
    event = get_event_or_404(session, event_id)
    if event.status != "pending_approval":
        raise ValidationError("Only events pending approval can be approved or rejected")

    event.status = decision
    event.last_modified = utcnow()
    session.flush()
    logger.info("Event %s marked %s by admin %s", event.id, decision, admin.id)

    if decision == "upcoming":
        pending = [invite for invite in event.invited_emails if not invite.notification_sent]
        _dispatch_invitations(session, event, pending, notifier or build_notifier())
    return event


def _apply_rsvp(
    event: Event,
    user: User,
    *,
    status: str,
    additional_guests: int,
    notes: str,
) -> Attendance:
    if event.registration_deadline and event.registration_deadline < utcnow():
        raise DeadlinePassedError()
    if status == "attending":
        current = attending_headcount(event, exclude_user_id=user.id)
        if current + additional_guests + 1 > event.capacity:
            raise CapacityExceededError()

    now = utcnow()
    attendance = next((a for a in event.attendees if a.user_id == user.id), None)
    if attendance is None:
        attendance = Attendance(user_id=user.id)
        event.attendees.append(attendance)
    attendance.status = status
    attendance.additional_guests = additional_guests
    attendance.notes = notes
    attendance.response_date = now
    # Touch the event row so the version check covers the attendee list.
    event.last_modified = now
    return attendance


def submit_rsvp(
    session: Session,
    user: User | None,
    event_id: str,
    status: str,
    additional_guests: int | None = 0,
    notes: str | None = "",
) -> Attendance:
    """Create or overwrite the caller's RSVP for an event."""
    authorizer.require_user(user)
    if status not in ATTENDANCE_STATUSES:
        raise ValidationError("Invalid RSVP status")
    try:
        guests = int(additional_guests or 0)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Additional guests must be a number") from exc
    if guests < 0:
        raise ValidationError("Additional guests cannot be negative")

    attempts = max(settings.rsvp_retry_attempts, 1)
    for attempt in range(1, attempts + 1):
        event = get_event_or_404(session, event_id)
        attendance = _apply_rsvp(
            event, user, status=status, additional_guests=guests, notes=notes or ""
        )
        try:
            session.flush()
        except StaleDataError:
            session.rollback()
            logger.warning(
                "Concurrent RSVP on event %s; retrying (attempt %d/%d)",
                event_id,
                attempt,
                attempts,
            )
            continue
        return attendance
    raise ConflictError("The event changed while saving your RSVP. Please try again.")


def edit_event(
    session: Session, actor: User | None, event_id: str, patch: dict[str, Any]
) -> Event:
    event = get_event_or_404(session, event_id)
    authorizer.require_event_manager(actor, event)
    if "status" in patch:
        raise ValidationError("Use the approval workflow to change an event's status")
    try:
        validated = EventPatch.model_validate(patch)
    except SchemaError as exc:
        raise ValidationError(schema_error_message(exc)) from exc

    changes = validated.model_dump(exclude_unset=True)
    for field in REQUIRED_PATCH_FIELDS:
        if field in changes and changes[field] is None:
            raise ValidationError(f"Event {field} cannot be empty")

    if "title" in changes:
        event.title = _require_text(changes["title"], "title")
    for field in ("description", "time", "location"):
        if field in changes:
            setattr(event, field, _require_text(changes[field], field))
    if "date" in changes and changes["date"] != event.date:
        if changes["date"] < utctoday():
            raise ValidationError("Event date cannot be in the past")
        event.date = changes["date"]
    if "capacity" in changes:
        headcount = event.attending_headcount
        if changes["capacity"] < headcount:
            raise ValidationError(
                f"Capacity cannot be lower than the {headcount} people already attending"
            )
        event.capacity = changes["capacity"]
    if "image" in changes:
        event.image = (changes["image"] or "").strip()
    if "is_private" in changes:
        event.is_private = bool(changes["is_private"])
    if "registration_deadline" in changes:
        event.registration_deadline = to_naive_utc(changes["registration_deadline"])
    if "categories" in changes:
        event.categories = _normalize_categories(changes["categories"])
    if "invited_emails" in changes:
        _replace_invites(event, normalize_invited_emails(changes["invited_emails"]))

    event.last_modified = utcnow()
    session.flush()
    logger.info("Event %s updated by %s", event.id, actor.id)
    return event


def delete_event(session: Session, actor: User | None, event_id: str) -> None:
    event = get_event_or_404(session, event_id)
    authorizer.require_event_manager(actor, event)
    session.delete(event)
    session.flush()
    logger.info("Event %s deleted by %s", event_id, actor.id)


def user_stats(session: Session, user: User | None) -> dict[str, int]:
    """Summarize a user's RSVPs and organized events."""
    authorizer.require_user(user)
    today = utctoday()
    rows = session.execute(
        select(Attendance.status, Event.date)
        .join(Event, Attendance.event_id == Event.id)
        .where(Attendance.user_id == user.id)
    ).all()
    organized = session.scalars(
        select(Event.id).where(Event.organizer_id == user.id)
    ).all()
    return {
        "upcoming_events": sum(
            1 for status, day in rows if status == "attending" and day >= today
        ),
        "maybe_events": sum(1 for status, day in rows if status == "maybe" and day >= today),
        "past_events": sum(1 for _, day in rows if day < today),
        "organized_events": len(organized),
    }


def user_events(
    session: Session, actor: User | None, user_id: str
) -> dict[str, list[Event]]:
    """Events a user organized, is attending, might attend and has attended.

    Visible to the user themselves and to admins.
    """
    target = get_user_profile(session, actor, user_id)
    today = utctoday()
    organized = session.scalars(
        select(Event)
        .where(Event.organizer_id == target.id)
        .order_by(Event.date.desc(), Event.time.desc())
    ).all()
    responses = session.execute(
        select(Attendance.status, Event)
        .join(Event, Attendance.event_id == Event.id)
        .where(Attendance.user_id == target.id)
        .order_by(Event.date.asc(), Event.time.asc())
    ).all()
    upcoming = [(status, event) for status, event in responses if event.date >= today]
    past = [event for _, event in responses if event.date < today]
    past.reverse()
    return {
        "organized": list(organized),
        "attending": [event for status, event in upcoming if status == "attending"],
        "maybe": [event for status, event in upcoming if status == "maybe"],
        "past": past,
    }
