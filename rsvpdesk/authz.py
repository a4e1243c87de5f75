"""Capability checks shared by the engines."""

from __future__ import annotations

from .errors import ForbiddenError, UnauthenticatedError
from .models import Chat, Event, User


class Authorizer:
    """Answers "may this actor do that" for each resource type."""

    def is_admin(self, actor: User | None) -> bool:
        return actor is not None and actor.is_admin

    def can_manage_event(self, actor: User | None, event: Event) -> bool:
        if actor is None:
            return False
        return self.is_admin(actor) or event.organizer_id == actor.id

    def can_view_event(self, actor: User | None, event: Event) -> bool:
        if event.status not in {"pending_approval", "rejected"}:
            return True
        return self.can_manage_event(actor, event)

    def can_access_chat(self, actor: User | None, chat: Chat) -> bool:
        if actor is None:
            return False
        return self.is_admin(actor) or chat.user_id == actor.id

    def can_view_user(self, actor: User | None, user_id: str) -> bool:
        if actor is None:
            return False
        return self.is_admin(actor) or actor.id == user_id

    def require_user(self, actor: User | None) -> User:
        if actor is None:
            raise UnauthenticatedError()
        return actor

    def require_admin(self, actor: User | None, message: str | None = None) -> User:
        self.require_user(actor)
        if not self.is_admin(actor):
            raise ForbiddenError(message or "Only administrators can do that")
        return actor

    def require_event_manager(self, actor: User | None, event: Event) -> User:
        self.require_user(actor)
        if not self.can_manage_event(actor, event):
            raise ForbiddenError("Not authorized to modify this event")
        return actor

    def require_chat_access(self, actor: User | None, chat: Chat) -> User:
        self.require_user(actor)
        if not self.can_access_chat(actor, chat):
            raise ForbiddenError("Access denied")
        return actor

    def require_user_access(self, actor: User | None, user_id: str) -> User:
        self.require_user(actor)
        if not self.can_view_user(actor, user_id):
            raise ForbiddenError("Not authorized to view this user")
        return actor


authorizer = Authorizer()
