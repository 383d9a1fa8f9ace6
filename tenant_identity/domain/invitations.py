"""Invitation bookkeeping: token issuance, limit/counter checks and expiry."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta

from .account import Account
from .errors import InvitationExpiredError, InvitationLimitError

INVITER_TYPE = "Account"


def generate_invitation_token() -> str:
    return secrets.token_urlsafe(32)


def remaining_invitations(account: Account) -> int | None:
    """Invitations ``account`` may still send; ``None`` means unlimited."""
    if account.invitation_limit is None:
        return None
    return max(account.invitation_limit - account.invitations_count, 0)


def ensure_can_invite(inviter: Account) -> None:
    remaining = remaining_invitations(inviter)
    if remaining is not None and remaining <= 0:
        raise InvitationLimitError(
            f"invitation limit of {inviter.invitation_limit} reached for account {inviter.account_id}"
        )


def ensure_not_expired(account: Account, now: datetime, ttl_seconds: int) -> None:
    """Raise when the invitation sent to ``account`` is older than ``ttl_seconds``.

    A TTL of ``0`` disables expiry.
    """
    if ttl_seconds <= 0 or account.invitation_sent_at is None:
        return
    if account.invitation_sent_at + timedelta(seconds=ttl_seconds) <= now:
        raise InvitationExpiredError("invitation expired")
