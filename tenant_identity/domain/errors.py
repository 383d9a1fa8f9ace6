"""Domain error taxonomy raised by account workflows."""

from __future__ import annotations


class IdentityError(Exception):
    """Base class for errors surfaced to API callers."""


class ValidationError(IdentityError):
    """Field-scoped validation failure carrying every per-field message."""

    def __init__(self, errors: dict[str, list[str]]) -> None:
        self.errors = {field: list(messages) for field, messages in errors.items() if messages}
        summary = "; ".join(
            f"{field} {message}" for field, messages in self.errors.items() for message in messages
        )
        super().__init__(summary or "validation failed")

    def messages_for(self, field: str) -> list[str]:
        """Return the bare messages recorded for ``field`` (empty when none)."""
        return list(self.errors.get(field, []))


class UniquenessConflictError(IdentityError):
    """Storage-level unique constraint violation that the validation pre-check missed."""

    def __init__(self, field: str, message: str = "conflicts with an existing record") -> None:
        self.field = field
        super().__init__(f"{field} {message}")


class InvalidArgumentError(IdentityError, ValueError):
    """Caller passed an argument a pure helper does not support."""


class AuthenticationDeniedError(IdentityError):
    """Account is not eligible to authenticate; ``reason`` distinguishes why."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"authentication denied: {reason}")


class AccountNotFoundError(IdentityError, LookupError):
    pass


class PersonNotFoundError(IdentityError, LookupError):
    pass


class InvitationNotFoundError(IdentityError, LookupError):
    pass


class InvitationLimitError(IdentityError):
    """Inviter has used every invitation its limit allows."""


class InvitationExpiredError(IdentityError):
    pass
