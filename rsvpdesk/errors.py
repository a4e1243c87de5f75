"""Error types raised by the RSVP Desk engines.

Every error carries the HTTP status and the short message the API returns.
Persistence and notification failures keep their details out of the
message; those only reach the server log.
"""

from __future__ import annotations


class RsvpDeskError(Exception):
    """Base class for errors the API turns into JSON responses."""

    status_code = 400
    error = "Error"
    default_message = "Something went wrong."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def as_dict(self) -> dict[str, str]:
        return {"error": self.error, "message": self.message}


class ValidationError(RsvpDeskError):
    status_code = 400
    error = "ValidationError"
    default_message = "Some of the fields were invalid."


class UnauthenticatedError(RsvpDeskError):
    status_code = 401
    error = "Unauthenticated"
    default_message = "Not authenticated"


class ForbiddenError(RsvpDeskError):
    status_code = 403
    error = "Forbidden"
    default_message = "You are not allowed to do that."


class NotFoundError(RsvpDeskError):
    status_code = 404
    error = "NotFound"
    default_message = "Not found"


class ConflictError(RsvpDeskError):
    status_code = 409
    error = "Conflict"
    default_message = "The resource changed while we were working on it. Please retry."


class CapacityExceededError(RsvpDeskError):
    """Raised when an event is at capacity for attending RSVPs."""

    status_code = 400
    error = "EventFull"
    default_message = "Event is at full capacity"


class DeadlinePassedError(RsvpDeskError):
    status_code = 400
    error = "DeadlinePassed"
    default_message = "RSVP deadline has passed"


class ChatOfflineError(RsvpDeskError):
    status_code = 409
    error = "ChatOffline"
    default_message = "Support chat is offline right now. Please try again later."


class ChatArchivedError(RsvpDeskError):
    status_code = 409
    error = "ChatArchived"
    default_message = "This chat was closed. Reopen it before sending new messages."


class PersistenceError(RsvpDeskError):
    status_code = 503
    error = "PersistenceError"
    default_message = "We hit a database issue. Please try again later."


class NotificationError(RsvpDeskError):
    """Email dispatch failed; never fatal to the calling operation."""

    status_code = 502
    error = "NotificationError"
    default_message = "We could not send notifications. Please try again later."
