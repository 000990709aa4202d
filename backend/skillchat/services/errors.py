"""Domain errors raised by the messaging service."""


class MessagingError(RuntimeError):
    """Base class for caller-facing messaging failures."""

    code = "messaging_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MessagingValidationError(MessagingError):
    """Malformed request rejected before any write."""

    code = "validation_error"


class MessagingPermissionError(MessagingError):
    """Caller is not an active participant, not the sender, or lacks the admin role."""

    code = "forbidden"


class MessagingNotFoundError(MessagingError):
    code = "not_found"


class MembershipRepairError(MessagingError):
    """Self-healing membership upsert still failed after one retry."""

    code = "membership_repair_failed"
