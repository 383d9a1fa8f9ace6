from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..config import get_settings
from .errors import InvalidArgumentError

NAME_FORMATS = ("default", "last_first")


@dataclass(slots=True)
class Account:
    """Aggregate root for a tenant-scoped, authentication-capable account."""

    account_id: str
    organization_id: str
    person_id: str
    email: str
    first_name: str
    last_name: str
    created_at: datetime
    deactivated_at: datetime | None = None
    provider: str | None = None
    uid: str | None = None
    invitation_token: str | None = None
    invitation_created_at: datetime | None = None
    invitation_sent_at: datetime | None = None
    invitation_accepted_at: datetime | None = None
    invitation_limit: int | None = None
    invitations_count: int = 0
    invited_by_id: str | None = None
    invited_by_type: str | None = None

    @property
    def is_deactivated(self) -> bool:
        return self.deactivated_at is not None

    @property
    def invitation_pending(self) -> bool:
        """``True`` while an issued invitation has not been accepted."""
        return self.invitation_created_at is not None and self.invitation_accepted_at is None

    def full_name(self, format: str = "default") -> str:
        """Render the account holder's name.

        ``"default"`` gives ``"First Last"``; ``"last_first"`` gives ``"Last, First"``.
        """
        if format == "default":
            return f"{self.first_name} {self.last_name}"
        if format == "last_first":
            return f"{self.last_name}, {self.first_name}"
        raise InvalidArgumentError(f"Unsupported format: {format}")

    @property
    def name_initials(self) -> str:
        return "".join(part[0] for part in self.full_name().split()).upper()

    def is_external_identity_account(self, provider: str | None = None) -> bool:
        """Whether the account was tagged by the configured external identity provider."""
        expected = provider or get_settings().external_identity_provider
        return self.provider == expected and bool(self.uid)


def authentication_denial_reason(account: Account) -> str | None:
    """Return why ``account`` may not authenticate, or ``None`` when it may.

    Deactivation takes precedence over a pending invitation.
    """
    if account.is_deactivated:
        return "deactivated"
    if account.invitation_pending:
        return "invitation_pending"
    return None
