"""FastAPI application for RSVP Desk."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date as date_type, datetime
from typing import Any

from fastapi import Body, Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import accounts, chat, events, users
from .authz import authorizer
from .config import settings
from .database import SessionLocal
from .errors import PersistenceError, RsvpDeskError, UnauthenticatedError
from .models import Attendance, Chat, ChatMessage, DeleteRequest, Event, PresenceFlag, User
from .notifications import Notifier, build_notifier
from .storage import init_db
from .users import authenticate, get_user_by_token

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(title="RSVP Desk", version=APP_VERSION, lifespan=lifespan)


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


def get_notifier() -> Notifier:
    return build_notifier()


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def current_user(request: Request, db: Session = Depends(get_db)) -> User | None:
    """Resolve the bearer token to a user, or ``None`` for anonymous calls."""
    return get_user_by_token(db, _get_bearer_token(request))


def require_user(user: User | None = Depends(current_user)) -> User:
    return authorizer.require_user(user)


# -------- payloads --------


class EventCreatePayload(BaseModel):
    title: str
    description: str
    date: date_type
    time: str
    location: str
    capacity: int
    image: str | None = None
    is_private: bool = False
    registration_deadline: datetime | None = None
    categories: list[str] = Field(default_factory=list)
    invited_emails: str | list[str] | None = None


class EventStatusPayload(BaseModel):
    status: str


class RSVPPayload(BaseModel):
    status: str
    additional_guests: int = 0
    notes: str | None = ""


class ChatStartPayload(BaseModel):
    initial_message: str | None = None
    file_url: str | None = None


class MessagePayload(BaseModel):
    content: str | None = None
    file_url: str | None = None


class MarkReadPayload(BaseModel):
    chat_id: str | None = None
    message_ids: Any = None


class PresencePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Type is checked by the chat engine so non-booleans get its message.
    is_online: Any = Field(None, alias="isOnline")


class DeleteRequestPayload(BaseModel):
    reason: str | None = None


class ResolvePayload(BaseModel):
    action: str
    admin_comment: str | None = None


class RolePayload(BaseModel):
    role: str | None = None


class TokenPayload(BaseModel):
    email: str
    password: str


# -------- serializers --------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _serialize_attendance(attendance: Attendance):
    return {
        "id": attendance.id,
        "event_id": attendance.event_id,
        "user_id": attendance.user_id,
        "status": attendance.status,
        "additional_guests": attendance.additional_guests,
        "notes": attendance.notes,
        "response_date": _iso(attendance.response_date),
    }


def _serialize_event(event: Event, *, include_private: bool = False):
    payload = {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "date": event.date.isoformat(),
        "time": event.time,
        "location": event.location,
        "capacity": event.capacity,
        "image": event.image or None,
        "organizer_id": event.organizer_id,
        "status": event.status,
        "is_private": event.is_private,
        "registration_deadline": _iso(event.registration_deadline),
        "categories": list(event.categories or []),
        "attending_count": event.attending_headcount,
        "available_spots": events.available_spots(event),
        "created_at": _iso(event.created_at),
        "last_modified": _iso(event.last_modified),
    }
    if include_private:
        payload["attendees"] = [_serialize_attendance(a) for a in event.attendees]
        payload["invited_emails"] = [
            {"email": invite.email, "notification_sent": invite.notification_sent}
            for invite in event.invited_emails
        ]
    return payload


def _serialize_message(message: ChatMessage):
    return {
        "id": message.id,
        "chat_id": message.chat_id,
        "sender_id": message.sender_id,
        "content": message.content,
        "file_url": message.file_url,
        "is_read": message.is_read,
        "timestamp": _iso(message.timestamp),
    }


def _serialize_chat(record: Chat, *, include_messages: bool = False):
    payload = {
        "id": record.id,
        "user_id": record.user_id,
        "is_active": record.is_active,
        "last_updated": _iso(record.last_updated),
        "created_at": _iso(record.created_at),
    }
    if include_messages:
        payload["messages"] = [_serialize_message(m) for m in record.messages]
    return payload


def _serialize_presence(flag: PresenceFlag):
    return {
        "domain": flag.domain,
        "is_online": flag.is_online,
        "last_updated": _iso(flag.last_updated),
        "updated_by": flag.updated_by,
    }


def _serialize_user(record: User):
    return {
        "id": record.id,
        "name": record.name,
        "email": record.email,
        "username": record.username,
        "role": record.role,
        "phone": record.phone,
        "address": record.address,
        "receive_email_notifications": record.receive_email_notifications,
        "created_at": _iso(record.created_at),
        "last_modified": _iso(record.last_modified),
    }


def _serialize_delete_request(request: DeleteRequest):
    return {
        "id": request.id,
        "user_id": request.user_id,
        "reason": request.reason,
        "status": request.status,
        "admin_comment": request.admin_comment,
        "requested_at": _iso(request.requested_at),
        "resolved_at": _iso(request.resolved_at),
        "resolved_by": request.resolved_by,
    }


# -------- error handling --------


@app.exception_handler(RsvpDeskError)
async def rsvpdesk_error_handler(request: Request, exc: RsvpDeskError):
    if exc.status_code >= 500:
        logger.error(
            "%s while handling %s %s", exc.error, request.method, request.url.path
        )
    return JSONResponse(exc.as_dict(), status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
    error = PersistenceError()
    return JSONResponse(error.as_dict(), status_code=error.status_code)


def _validation_details(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {
            "error": "ValidationError",
            "message": "Some of the fields were invalid.",
            "detail": _validation_details(exc),
        },
        status_code=422,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse(
        {"error": "InternalError", "message": "Internal server error"},
        status_code=500,
    )


# -------- JSON API (v1) --------


@app.get("/api/v1/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/v1/auth/token")
def api_issue_token(payload: TokenPayload, db: Session = Depends(get_db)):
    """Exchange email and password for the account's bearer token."""
    user = authenticate(db, payload.email, payload.password)
    if user is None:
        raise UnauthenticatedError("Invalid email or password")
    return {"token": user.api_token, "user": _serialize_user(user)}


@app.get("/api/v1/events")
def api_list_events(
    status: str | None = Query(None),
    organizer: str | None = Query(None),
    category: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.events_per_page, ge=1, le=500),
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    records, pagination = events.paginate_events(
        db,
        user,
        page=page,
        per_page=per_page,
        status=status,
        organizer_id=organizer,
        category=category,
    )
    return {
        "events": [_serialize_event(event) for event in records],
        "pagination": pagination,
    }


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    user: User = Depends(require_user),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db),
):
    event = events.create_event(db, user, notifier=notifier, **payload.model_dump())
    return {"event": _serialize_event(event, include_private=True)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(
    event_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    event = events.get_event(db, event_id, user)
    return {
        "event": _serialize_event(
            event, include_private=authorizer.can_manage_event(user, event)
        )
    }


@app.patch("/api/v1/events/{event_id}")
def api_set_event_status(
    event_id: str,
    payload: EventStatusPayload,
    user: User = Depends(require_user),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db),
):
    event = events.approve_or_reject(
        db, user, event_id, payload.status, notifier=notifier
    )
    return {"event": _serialize_event(event, include_private=True)}


@app.put("/api/v1/events/{event_id}")
def api_edit_event(
    event_id: str,
    payload: dict[str, Any] = Body(...),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    event = events.edit_event(db, user, event_id, payload)
    return {"event": _serialize_event(event, include_private=True)}


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(
    event_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    events.delete_event(db, user, event_id)
    return Response(status_code=204)


@app.post("/api/v1/events/{event_id}/rsvp")
def api_submit_rsvp(
    event_id: str,
    payload: RSVPPayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    attendance = events.submit_rsvp(
        db,
        user,
        event_id,
        payload.status,
        additional_guests=payload.additional_guests,
        notes=payload.notes,
    )
    event = attendance.event
    return {
        "rsvp": _serialize_attendance(attendance),
        "event": _serialize_event(event),
    }


@app.get("/api/v1/users/me/stats")
def api_user_stats(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"stats": events.user_stats(db, user)}


@app.get("/api/v1/users")
def api_list_users(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"users": [_serialize_user(record) for record in users.list_users(db, user)]}


@app.get("/api/v1/users/me")
def api_get_profile(user: User = Depends(require_user)):
    return {"user": _serialize_user(user)}


@app.put("/api/v1/users/me")
def api_update_profile(
    payload: dict[str, Any] = Body(...),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    updated = users.update_profile(db, user, payload)
    return {"user": _serialize_user(updated)}


@app.post("/api/v1/users/delete-request", status_code=201)
def api_request_deletion(
    payload: DeleteRequestPayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    request = accounts.request_deletion(db, user, payload.reason)
    return {"delete_request": _serialize_delete_request(request)}


@app.get("/api/v1/users/delete-request")
def api_list_delete_requests(
    status: str | None = Query(None),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    requests = accounts.list_delete_requests(db, user, status=status)
    return {"delete_requests": [_serialize_delete_request(r) for r in requests]}


@app.get("/api/v1/users/delete-request/{request_id}")
def api_get_delete_request(
    request_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    request = accounts.get_delete_request(db, user, request_id)
    return {"delete_request": _serialize_delete_request(request)}


@app.patch("/api/v1/users/delete-request/{request_id}")
def api_resolve_delete_request(
    request_id: str,
    payload: ResolvePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    request = accounts.resolve_delete_request(
        db, user, request_id, payload.action, payload.admin_comment
    )
    return {"delete_request": _serialize_delete_request(request)}


# ``/api/v1/users/{user_id}`` comes after the static ``/api/v1/users/...`` paths.


@app.get("/api/v1/users/{user_id}")
def api_get_user(
    user_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    return {"user": _serialize_user(users.get_user_profile(db, user, user_id))}


@app.patch("/api/v1/users/{user_id}")
def api_set_user_role(
    user_id: str,
    payload: RolePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    updated = users.set_role(db, user, user_id, payload.role)
    return {"user": _serialize_user(updated)}


@app.get("/api/v1/users/{user_id}/events")
def api_user_events(
    user_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    grouped = events.user_events(db, user, user_id)
    return {
        key: [_serialize_event(event) for event in records]
        for key, records in grouped.items()
    }


# Static chat paths are registered before ``/api/v1/chat/{chat_id}``.


@app.get("/api/v1/chat/unread")
def api_count_unread(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"unread": chat.count_unread(db, user)}


@app.get("/api/v1/chat/status")
def api_chat_status(db: Session = Depends(get_db)):
    return {"status": _serialize_presence(chat.get_presence(db, "chat"))}


@app.put("/api/v1/chat/status")
def api_set_chat_status(
    payload: PresencePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    flag = chat.set_presence(db, user, payload.is_online, "chat")
    return {"status": _serialize_presence(flag)}


@app.get("/api/v1/store/status")
def api_store_status(db: Session = Depends(get_db)):
    return {"status": _serialize_presence(chat.get_presence(db, "store"))}


@app.put("/api/v1/store/status")
def api_set_store_status(
    payload: PresencePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    flag = chat.set_presence(db, user, payload.is_online, "store")
    return {"status": _serialize_presence(flag)}


@app.put("/api/v1/chat/messages/read")
def api_mark_read(
    payload: MarkReadPayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    updated = chat.mark_read(db, user, payload.chat_id or "", payload.message_ids)
    return {"updated": updated}


@app.get("/api/v1/chat")
def api_list_chats(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"chats": [_serialize_chat(record) for record in chat.list_chats(db, user)]}


@app.post("/api/v1/chat")
def api_start_chat(
    payload: ChatStartPayload,
    response: Response,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    record, message, created = chat.start_or_append(
        db, user, payload.initial_message, payload.file_url
    )
    response.status_code = 201 if created else 200
    return {
        "chat": _serialize_chat(record, include_messages=True),
        "message": _serialize_message(message),
        "created": created,
    }


@app.get("/api/v1/chat/{chat_id}")
def api_get_chat(
    chat_id: str, user: User = Depends(require_user), db: Session = Depends(get_db)
):
    record = chat.get_chat(db, user, chat_id)
    return {"chat": _serialize_chat(record, include_messages=True)}


@app.post("/api/v1/chat/{chat_id}/message", status_code=201)
def api_post_message(
    chat_id: str,
    payload: MessagePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    message = chat.post_message(db, user, chat_id, payload.content, payload.file_url)
    return {"message": _serialize_message(message)}


@app.put("/api/v1/chat/{chat_id}/read")
def api_mark_all_read(
    chat_id: str, user: User = Depends(require_user), db: Session = Depends(get_db)
):
    return {"updated": chat.mark_all_read(db, user, chat_id)}


@app.delete("/api/v1/chat/{chat_id}")
def api_archive_chat(
    chat_id: str, user: User = Depends(require_user), db: Session = Depends(get_db)
):
    record = chat.archive_chat(db, user, chat_id)
    return {"chat": _serialize_chat(record)}


@app.post("/api/v1/chat/{chat_id}/reopen")
def api_reopen_chat(
    chat_id: str, user: User = Depends(require_user), db: Session = Depends(get_db)
):
    record = chat.reopen_chat(db, user, chat_id)
    return {"chat": _serialize_chat(record)}
