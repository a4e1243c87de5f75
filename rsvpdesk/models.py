"""SQLAlchemy models for RSVP Desk."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import new_object_id, utcnow

Base = declarative_base()

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = {ROLE_USER, ROLE_ADMIN}

EVENT_STATUSES = {
    "pending_approval",
    "upcoming",
    "ongoing",
    "completed",
    "cancelled",
    "rejected",
}
ATTENDANCE_STATUSES = {"attending", "maybe", "declined"}
DELETE_REQUEST_STATUSES = {"pending", "approved", "rejected"}
PRESENCE_DOMAINS = {"chat", "store"}


def _now() -> datetime:
    return utcnow()


class User(Base):
    __tablename__ = "users"

    id = Column(String(24), primary_key=True, default=new_object_id)
    name = Column(String(120), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    username = Column(String(32), nullable=True, unique=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(16), nullable=False, default=ROLE_USER)
    phone = Column(String(32), nullable=False, default="")
    address = Column(String(255), nullable=False, default="")
    receive_email_notifications = Column(Boolean, nullable=False, default=True)
    api_token = Column(String(128), nullable=False, unique=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class Event(Base):
    __tablename__ = "events"

    id = Column(String(24), primary_key=True, default=new_object_id)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    date = Column(Date, nullable=False)
    time = Column(String(32), nullable=False)
    location = Column(String(255), nullable=False)
    capacity = Column(Integer, nullable=False)
    image = Column(String(1024), nullable=False, default="")
    organizer_id = Column(
        String(24), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    status = Column(String(32), nullable=False, default="pending_approval")
    is_private = Column(Boolean, nullable=False, default=False)
    registration_deadline = Column(DateTime, nullable=True)
    categories = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    # Every flush that touches the row bumps ``version`` and fails on a stale read.
    __mapper_args__ = {"version_id_col": version}

    organizer = relationship("User")
    attendees = relationship(
        "Attendance",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="Attendance.response_date",
    )
    invited_emails = relationship(
        "InvitedEmail",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="InvitedEmail.invited_at",
    )

    @property
    def attending_headcount(self) -> int:
        """Return the total attending party size (RSVP + guests)."""
        return sum(
            (a.additional_guests or 0) + 1
            for a in self.attendees
            if a.status == "attending"
        )


class Attendance(Base):
    __tablename__ = "event_attendees"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_attendee"),)

    id = Column(String(24), primary_key=True, default=new_object_id)
    event_id = Column(
        String(24), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(24), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(16), nullable=False, default="attending")
    response_date = Column(DateTime, default=_now, nullable=False)
    additional_guests = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=False, default="")

    event = relationship("Event", back_populates="attendees")
    user = relationship("User")


class InvitedEmail(Base):
    __tablename__ = "event_invites"
    __table_args__ = (UniqueConstraint("event_id", "email", name="uq_invite"),)

    id = Column(String(24), primary_key=True, default=new_object_id)
    event_id = Column(
        String(24), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    email = Column(String(255), nullable=False)
    invited_at = Column(DateTime, default=_now, nullable=False)
    notification_sent = Column(Boolean, nullable=False, default=False)

    event = relationship("Event", back_populates="invited_emails")


class Chat(Base):
    __tablename__ = "chats"
    __table_args__ = (
        # One active thread per user; archived threads are unconstrained.
        Index(
            "uq_chats_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("ix_chats_user_last_updated", "user_id", "last_updated"),
    )

    id = Column(String(24), primary_key=True, default=new_object_id)
    user_id = Column(String(24), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_updated = Column(DateTime, default=_now, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    user = relationship("User")
    messages = relationship(
        "ChatMessage",
        back_populates="chat",
        cascade="all, delete-orphan",
        order_by="ChatMessage.timestamp",
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String(24), primary_key=True, default=new_object_id)
    chat_id = Column(
        String(24), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    sender_id = Column(String(24), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    content = Column(Text, nullable=False)
    file_url = Column(String(1024), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime, default=_now, nullable=False)

    chat = relationship("Chat", back_populates="messages")
    sender = relationship("User")


class PresenceFlag(Base):
    __tablename__ = "presence_flags"

    domain = Column(String(16), primary_key=True)
    is_online = Column(Boolean, nullable=False, default=False)
    last_updated = Column(DateTime, default=_now, nullable=False)
    updated_by = Column(String(24), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class DeleteRequest(Base):
    __tablename__ = "delete_requests"
    __table_args__ = (Index("ix_delete_requests_user_status", "user_id", "status"),)

    id = Column(String(24), primary_key=True, default=new_object_id)
    # Plain column: the request outlives the account it deletes.
    user_id = Column(String(24), nullable=False)
    reason = Column(Text, nullable=False, default="No reason provided")
    status = Column(String(16), nullable=False, default="pending")
    admin_comment = Column(Text, nullable=False, default="")
    requested_at = Column(DateTime, default=_now, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(24), nullable=True)
