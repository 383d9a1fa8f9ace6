"""Field validation rules for accounts and people.

Each ``*_errors`` function returns a mapping of field name to messages; an
empty mapping means the input is valid. :func:`raise_for_errors` turns a
non-empty mapping into a :class:`~tenant_identity.domain.errors.ValidationError`.
"""

from __future__ import annotations

import re
from collections import defaultdict

from .account import Account
from .contracts import CreateAccountInput, CreatePersonInput, UpdateAccountInput
from .errors import ValidationError

EMAIL_PATTERN = re.compile(r"([^@\s]+)@((?:[-a-z0-9]+\.)+[a-z]{2,})", re.IGNORECASE | re.ASCII)

BLANK = "can't be blank"
INVALID = "is invalid"
TAKEN = "has already been taken"
NOT_ACCEPTED = "must be accepted"
EMAIL_IMMUTABLE = "email cannot be changed"
MUST_EXIST = "must exist"


def is_blank(value: str | None) -> bool:
    return value is None or not value.strip()


def is_valid_email(value: str) -> bool:
    return EMAIL_PATTERN.fullmatch(value) is not None


def person_errors(
    payload: CreatePersonInput, *, organization_missing: bool = False
) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = defaultdict(list)
    if organization_missing:
        errors["organization_id"].append(BLANK)
    for field in ("first_name", "last_name", "email"):
        if is_blank(getattr(payload, field)):
            errors[field].append(BLANK)
    return dict(errors)


def creation_errors(
    payload: CreateAccountInput,
    *,
    email_taken: bool,
    person_missing: bool = False,
    organization_missing: bool = False,
) -> dict[str, list[str]]:
    """Validate a new account against presence, format, uniqueness and acceptance rules.

    ``email_taken`` is the result of the organization-scoped uniqueness lookup,
    which must be made with the email exactly as supplied.
    """
    errors: dict[str, list[str]] = defaultdict(list)
    if organization_missing:
        errors["organization_id"].append(BLANK)
    for field in ("first_name", "last_name"):
        if is_blank(getattr(payload, field)):
            errors[field].append(BLANK)

    if is_blank(payload.email):
        errors["email"].append(BLANK)
    else:
        if not is_valid_email(payload.email):
            errors["email"].append(INVALID)
        if email_taken:
            errors["email"].append(TAKEN)

    errors["tos_agreement"].extend(acceptance_errors(payload.tos_agreement))

    if person_missing:
        errors["person"].append(MUST_EXIST)
    if payload.person is not None and payload.person_id is None:
        for field, messages in person_errors(payload.person).items():
            errors[f"person.{field}"].extend(messages)

    return {field: messages for field, messages in errors.items() if messages}


def acceptance_errors(tos_agreement: bool | None) -> list[str]:
    """``None`` means the agreement was never presented and passes."""
    if tos_agreement is None or tos_agreement is True:
        return []
    return [NOT_ACCEPTED]


def update_errors(account: Account, changes: UpdateAccountInput) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = defaultdict(list)
    for field in ("first_name", "last_name"):
        value = getattr(changes, field)
        if value is not None and is_blank(value):
            errors[field].append(BLANK)
    # format validity of the new value is irrelevant here
    if changes.email is not None and changes.email != account.email:
        errors["email"].append(EMAIL_IMMUTABLE)
    return dict(errors)


def raise_for_errors(errors: dict[str, list[str]]) -> None:
    if errors:
        raise ValidationError(errors)
