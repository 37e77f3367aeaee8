"""Error taxonomy shared by the chat core, file storage and link previews.

Every error carries a short machine-readable ``code`` that is sent to the
originating client inside an ``error`` event (or mapped to an HTTP status by
the REST routers). None of these errors is fatal to the server: a failed
action only affects the actor that issued it.
"""


class ChatError(Exception):
    """Base exception for rejected chat actions."""
    code = "error"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_event(self) -> dict:
        return {"code": self.code, "error": self.message}


class NotFoundError(ChatError):
    """A referenced room, message or user does not exist."""
    code = "not_found"
    status_code = 404


class RoomNotFoundError(NotFoundError):
    """Raised when joining a room that does not exist."""
    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__("Room does not exist.")


class ForbiddenError(ChatError):
    """Permission violation (non-host privileges, acting outside one's room)."""
    code = "forbidden"
    status_code = 403


class InvalidPayloadError(ChatError):
    """Inbound action is missing required fields or has malformed values."""
    code = "validation_error"
    status_code = 422


class ExternalServiceError(ChatError):
    """Thumbnail or preview service failure. Always degraded, never surfaced."""
    code = "external_service_degradation"
    status_code = 502
