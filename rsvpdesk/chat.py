"""Support chat between users and admins, plus the presence flags.

A chat belongs to one regular user; every admin participates in every chat.
Chats are archived rather than deleted and come back only through
:func:`reopen_chat`. Posting from a regular user is refused while the chat
presence flag is offline.
"""

from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .authz import authorizer
from .errors import (
    ChatArchivedError,
    ChatOfflineError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from .models import PRESENCE_DOMAINS, Chat, ChatMessage, PresenceFlag, User
from .utils import is_object_id, utcnow

logger = logging.getLogger("uvicorn.error")

CHAT_PRESENCE = "chat"


def _require_content(content: str | None) -> str:
    cleaned = (content or "").strip()
    if not cleaned:
        raise ValidationError("Message content is required")
    return cleaned


def _not_sent_by(actor: User):
    return or_(ChatMessage.sender_id.is_(None), ChatMessage.sender_id != actor.id)


def get_chat_or_404(session: Session, chat_id: str) -> Chat:
    if not is_object_id(chat_id):
        raise ValidationError("Invalid chat ID")
    chat = session.get(Chat, chat_id)
    if not chat:
        raise NotFoundError("Chat not found")
    return chat


def active_chat_for(session: Session, user_id: str) -> Chat | None:
    stmt = select(Chat).where(Chat.user_id == user_id, Chat.is_active.is_(True))
    return session.scalars(stmt).first()


# -------- presence --------


def _check_domain(domain: str) -> str:
    if domain not in PRESENCE_DOMAINS:
        raise ValidationError("Unknown presence domain")
    return domain


def get_presence(session: Session, domain: str = CHAT_PRESENCE) -> PresenceFlag:
    """Return the flag for ``domain``, creating an offline one if missing."""
    _check_domain(domain)
    flag = session.get(PresenceFlag, domain)
    if flag is None:
        flag = session.merge(
            PresenceFlag(domain=domain, is_online=False, last_updated=utcnow())
        )
        session.flush()
    return flag


def set_presence(
    session: Session,
    admin: User | None,
    is_online: bool,
    domain: str = CHAT_PRESENCE,
) -> PresenceFlag:
    authorizer.require_admin(admin)
    _check_domain(domain)
    if not isinstance(is_online, bool):
        raise ValidationError("isOnline field must be a boolean")
    flag = session.merge(
        PresenceFlag(
            domain=domain,
            is_online=is_online,
            last_updated=utcnow(),
            updated_by=admin.id,
        )
    )
    session.flush()
    logger.info(
        "Presence for %s set %s by admin %s",
        domain,
        "online" if is_online else "offline",
        admin.id,
    )
    return flag


def _ensure_chat_online(session: Session, sender: User) -> None:
    if authorizer.is_admin(sender):
        return
    if not get_presence(session, CHAT_PRESENCE).is_online:
        raise ChatOfflineError()


# -------- messages --------


def _append_message(
    chat: Chat, sender: User, content: str, file_url: str | None
) -> ChatMessage:
    now = utcnow()
    message = ChatMessage(
        sender_id=sender.id,
        content=content,
        file_url=file_url or None,
        is_read=False,
        timestamp=now,
    )
    chat.messages.append(message)
    chat.last_updated = now
    return message


def start_or_append(
    session: Session,
    user: User | None,
    content: str | None,
    file_url: str | None = None,
) -> tuple[Chat, ChatMessage, bool]:
    """Post from a regular user without a chat id.

    Appends to the user's active chat when there is one, otherwise opens a
    new chat. Returns ``(chat, message, created)``.
    """
    authorizer.require_user(user)
    if authorizer.is_admin(user):
        raise ForbiddenError("Admins cannot create new chats")
    cleaned = _require_content(content)
    _ensure_chat_online(session, user)

    chat = active_chat_for(session, user.id)
    if chat is not None:
        message = _append_message(chat, user, cleaned, file_url)
        session.flush()
        return chat, message, False

    chat = Chat(user_id=user.id, is_active=True, created_at=utcnow())
    message = _append_message(chat, user, cleaned, file_url)
    session.add(chat)
    try:
        session.flush()
    except IntegrityError:
        # Another request opened the user's active chat first; join it.
        session.rollback()
        chat = active_chat_for(session, user.id)
        if chat is None:
            raise
        message = _append_message(chat, user, cleaned, file_url)
        session.flush()
        return chat, message, False
    logger.info("Opened chat %s for user %s", chat.id, user.id)
    return chat, message, True


def post_message(
    session: Session,
    sender: User | None,
    chat_id: str,
    content: str | None,
    file_url: str | None = None,
) -> ChatMessage:
    authorizer.require_user(sender)
    cleaned = _require_content(content)
    chat = get_chat_or_404(session, chat_id)
    authorizer.require_chat_access(sender, chat)
    _ensure_chat_online(session, sender)
    if not chat.is_active:
        raise ChatArchivedError()
    message = _append_message(chat, sender, cleaned, file_url)
    session.flush()
    return message


def get_chat(session: Session, actor: User | None, chat_id: str) -> Chat:
    chat = get_chat_or_404(session, chat_id)
    authorizer.require_chat_access(actor, chat)
    return chat


def _mark(session: Session, chat: Chat, actor: User, message_ids: Sequence[str] | None) -> int:
    stmt = (
        update(ChatMessage)
        .where(
            ChatMessage.chat_id == chat.id,
            ChatMessage.is_read.is_(False),
            _not_sent_by(actor),
        )
        .values(is_read=True)
        .execution_options(synchronize_session="evaluate")
    )
    if message_ids is not None:
        stmt = stmt.where(ChatMessage.id.in_(list(message_ids)))
    result = session.execute(stmt)
    return result.rowcount or 0


def mark_read(
    session: Session,
    actor: User | None,
    chat_id: str,
    message_ids: Sequence[str] | None,
) -> int:
    """Flip unread messages sent by someone else; return how many changed."""
    authorizer.require_user(actor)
    if not chat_id or not message_ids or not isinstance(message_ids, (list, tuple)):
        raise ValidationError("Chat ID and an array of message IDs are required")
    if not all(isinstance(message_id, str) for message_id in message_ids):
        raise ValidationError("Message IDs must be strings")
    chat = get_chat_or_404(session, chat_id)
    authorizer.require_chat_access(actor, chat)
    updated = _mark(session, chat, actor, message_ids)
    logger.info("Marked %d messages as read in chat %s", updated, chat.id)
    return updated


def mark_all_read(session: Session, actor: User | None, chat_id: str) -> int:
    chat = get_chat_or_404(session, chat_id)
    authorizer.require_chat_access(actor, chat)
    return _mark(session, chat, actor, None)


def list_chats(session: Session, actor: User | None) -> list[Chat]:
    authorizer.require_user(actor)
    stmt = (
        select(Chat)
        .where(Chat.is_active.is_(True))
        .order_by(Chat.last_updated.desc())
    )
    if not authorizer.is_admin(actor):
        stmt = stmt.where(Chat.user_id == actor.id)
    return list(session.scalars(stmt).all())


def count_unread(session: Session, actor: User | None) -> int:
    """Count unread messages addressed to ``actor``.

    For admins that is every unread message they did not send in any active
    chat. For users it is unread messages in their own active chats sent by
    anyone else, which can only be an admin.
    """
    authorizer.require_user(actor)
    stmt = (
        select(func.count(ChatMessage.id))
        .join(Chat, ChatMessage.chat_id == Chat.id)
        .where(
            Chat.is_active.is_(True),
            ChatMessage.is_read.is_(False),
            _not_sent_by(actor),
        )
    )
    if not authorizer.is_admin(actor):
        stmt = stmt.where(Chat.user_id == actor.id)
    return session.scalar(stmt) or 0


def archive_chat(session: Session, actor: User | None, chat_id: str) -> Chat:
    chat = get_chat_or_404(session, chat_id)
    authorizer.require_chat_access(actor, chat)
    if chat.is_active:
        chat.is_active = False
        session.flush()
        logger.info("Chat %s archived by %s", chat.id, actor.id)
    return chat


def reopen_chat(session: Session, actor: User | None, chat_id: str) -> Chat:
    chat = get_chat_or_404(session, chat_id)
    authorizer.require_chat_access(actor, chat)
    if chat.is_active:
        return chat
    if chat.user_id is None:
        raise ConflictError("This chat belongs to a deleted account")
    if active_chat_for(session, chat.user_id) is not None:
        raise ConflictError("The user already has an active chat")
    chat.is_active = True
    chat.last_updated = utcnow()
    session.flush()
    logger.info("Chat %s reopened by %s", chat.id, actor.id)
    return chat
