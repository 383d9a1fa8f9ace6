"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class CreatePersonInput:
    """Inputs for creating a person record, directly or nested in an account."""

    first_name: str
    last_name: str
    email: str
    organization_id: str | None = None


@dataclass(slots=True)
class CreateAccountInput:
    """Inputs required to register an account within an organization.

    ``tos_agreement`` is ``None`` when the agreement was not presented to the
    caller (invitation issuance); any other value must be ``True``.
    """

    email: str
    first_name: str
    last_name: str
    tos_agreement: bool | None = None
    organization_id: str | None = None
    person_id: str | None = None
    person: CreatePersonInput | None = None
    provider: str | None = None
    uid: str | None = None


@dataclass(slots=True)
class UpdateAccountInput:
    """Profile changes; ``None`` leaves a field untouched."""

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None


@dataclass(slots=True)
class InviteAccountInput:
    email: str
    first_name: str
    last_name: str
