"""Error taxonomy for parley.

Every failure surfaced by the stores and the messaging service derives from
MessagingError. The ``code`` attribute is stable and is what goes out on the
wire (HTTP error bodies and websocket ``error`` events).
"""


class MessagingError(Exception):
    """Base class for all messaging failures."""

    code = "messaging_error"

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(MessagingError):
    """Structural violation detected before anything is persisted."""

    code = "validation_error"


class PermissionDeniedError(MessagingError):
    """The acting identity is not allowed to perform the operation."""

    code = "permission_denied"


class NotFoundError(MessagingError):
    """A referenced conversation, message or participant does not exist."""

    code = "not_found"


class ConflictError(MessagingError):
    """A uniqueness or compare-and-set conflict that the caller must see."""

    code = "conflict"


class TransientStoreError(MessagingError):
    """The store stayed locked or unreachable after bounded retries."""

    code = "transient_store_error"


class AuthError(Exception):
    """Raised when a credential cannot be resolved to an identity."""

    def __init__(self, message: str = "Invalid credential"):
        super().__init__(message)
        self.message = message
