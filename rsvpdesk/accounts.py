"""Self-service account deletion requests."""

from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from .authz import authorizer
from .errors import NotFoundError, ValidationError
from .models import (
    DELETE_REQUEST_STATUSES,
    Attendance,
    Chat,
    ChatMessage,
    DeleteRequest,
    Event,
    PresenceFlag,
    User,
)
from .utils import is_object_id, utcnow

logger = logging.getLogger("uvicorn.error")

RESOLUTION_ACTIONS = {"approve": "approved", "reject": "rejected"}


def pending_request_for(session: Session, user_id: str) -> DeleteRequest | None:
    stmt = select(DeleteRequest).where(
        DeleteRequest.user_id == user_id, DeleteRequest.status == "pending"
    )
    return session.scalars(stmt).first()


def request_deletion(
    session: Session, user: User | None, reason: str | None = None
) -> DeleteRequest:
    authorizer.require_user(user)
    if pending_request_for(session, user.id):
        raise ValidationError("You already have a pending delete request")
    request = DeleteRequest(
        user_id=user.id,
        reason=(reason or "").strip() or "No reason provided",
        status="pending",
        requested_at=utcnow(),
    )
    session.add(request)
    session.flush()
    logger.info("User %s requested account deletion (%s)", user.id, request.id)
    return request


def list_delete_requests(
    session: Session, admin: User | None, *, status: str | None = None
) -> Sequence[DeleteRequest]:
    authorizer.require_admin(admin, "Not authorized")
    stmt = select(DeleteRequest).order_by(DeleteRequest.requested_at.desc())
    if status:
        if status not in DELETE_REQUEST_STATUSES:
            raise ValidationError("Invalid status value")
        stmt = stmt.where(DeleteRequest.status == status)
    return session.scalars(stmt).all()


def get_delete_request(
    session: Session, admin: User | None, request_id: str
) -> DeleteRequest:
    authorizer.require_admin(admin, "Not authorized")
    if not is_object_id(request_id):
        raise ValidationError("Invalid delete request ID")
    request = session.get(DeleteRequest, request_id)
    if not request:
        raise NotFoundError("Delete request not found")
    return request


def delete_user_cascade(session: Session, user: User) -> dict[str, int]:
    """Delete ``user`` and everything that would otherwise dangle.

    Organized events go away with their RSVPs, the user's own RSVPs are
    removed, chats are archived with the owner cleared and messages keep
    their content with the sender cleared.
    """
    organized = session.scalars(select(Event).where(Event.organizer_id == user.id)).all()
    for event in organized:
        session.delete(event)
    session.flush()

    removed_rsvps = session.execute(
        delete(Attendance).where(Attendance.user_id == user.id)
    ).rowcount
    archived_chats = session.execute(
        update(Chat)
        .where(Chat.user_id == user.id)
        .values(is_active=False, user_id=None)
        .execution_options(synchronize_session="evaluate")
    ).rowcount
    session.execute(
        update(ChatMessage)
        .where(ChatMessage.sender_id == user.id)
        .values(sender_id=None)
        .execution_options(synchronize_session="evaluate")
    )
    session.execute(
        update(PresenceFlag)
        .where(PresenceFlag.updated_by == user.id)
        .values(updated_by=None)
        .execution_options(synchronize_session="evaluate")
    )
    session.delete(user)
    session.flush()
    return {
        "events": len(organized),
        "rsvps": removed_rsvps or 0,
        "chats": archived_chats or 0,
    }


def resolve_delete_request(
    session: Session,
    admin: User | None,
    request_id: str,
    action: str,
    admin_comment: str | None = None,
) -> DeleteRequest:
    request = get_delete_request(session, admin, request_id)
    if action not in RESOLUTION_ACTIONS:
        raise ValidationError('Invalid action. Must be either "approve" or "reject"')
    if request.status != "pending":
        raise ValidationError("This delete request was already resolved")

    request.status = RESOLUTION_ACTIONS[action]
    request.admin_comment = admin_comment or ""
    request.resolved_at = utcnow()
    request.resolved_by = admin.id
    session.flush()

    if action == "approve":
        user = session.get(User, request.user_id)
        if user is not None:
            stats = delete_user_cascade(session, user)
            logger.info(
                "Deleted user %s after request %s (events=%d, rsvps=%d, chats=%d)",
                request.user_id,
                request.id,
                stats["events"],
                stats["rsvps"],
                stats["chats"],
            )
        else:
            logger.warning(
                "Delete request %s approved but user %s no longer exists",
                request.id,
                request.user_id,
            )
    return request
