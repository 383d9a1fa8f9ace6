"""Account service orchestrating validation, person linking, activation and invitations."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from .account import Account, authentication_denial_reason
from .contracts import CreateAccountInput, CreatePersonInput, InviteAccountInput, UpdateAccountInput
from .errors import (
    AccountNotFoundError,
    AuthenticationDeniedError,
    InvalidArgumentError,
    InvitationNotFoundError,
    PersonNotFoundError,
    ValidationError,
)
from .invitations import INVITER_TYPE, ensure_can_invite, ensure_not_expired, generate_invitation_token
from .person import Person
from .tenant import TenantContext
from .validation import (
    NOT_ACCEPTED,
    creation_errors,
    is_blank,
    person_errors,
    raise_for_errors,
    update_errors,
)
from .. import metrics
from ..config import Settings, get_settings
from ..repository import AccountRepository, AccountStore, AuditLogRecord

logger = logging.getLogger(__name__)

FILTERABLE_FIELDS = ("first_name", "last_name")
TRAVERSABLE_RELATIONS = ("matches",)


class AccountService:
    """Account workflows backed by Postgres storage.

    Every public method takes the caller's :class:`TenantContext` and runs in
    exactly one repository unit of work.
    """

    def __init__(self, repository: AccountRepository, settings: Settings | None = None) -> None:
        """Store dependencies used to orchestrate persistence and auditing."""
        self._repository = repository
        self._settings = settings or get_settings()

    # -- people ---------------------------------------------------------

    def create_person(self, tenant: TenantContext, payload: CreatePersonInput) -> Person:
        """Create a person record directly, without an account."""
        organization_id = tenant.resolve_organization(payload.organization_id)
        raise_for_errors(person_errors(payload, organization_missing=organization_id is None))
        with self._repository.unit_of_work(tenant) as store:
            person = store.insert_person(
                organization_id=organization_id,
                first_name=payload.first_name,
                last_name=payload.last_name,
                email=payload.email,
            )
            self._audit_person_created(store, person)
        return person

    def get_person(self, tenant: TenantContext, person_id: str) -> Person:
        with self._repository.unit_of_work(tenant) as store:
            person = store.get_person(person_id)
        if person is None:
            raise PersonNotFoundError("person not found")
        return person

    # -- accounts -------------------------------------------------------

    def create_account(self, tenant: TenantContext, payload: CreateAccountInput) -> Account:
        """Register an account, binding it to a new or existing person."""
        with self._repository.unit_of_work(tenant) as store:
            return self._create_account(store, tenant, payload, source="registration")

    def get_account(self, tenant: TenantContext, account_id: str) -> Account | None:
        """Retrieve an account by identifier if it is visible in ``tenant``."""
        with self._repository.unit_of_work(tenant) as store:
            return store.get_account(account_id)

    def update_account(
        self, tenant: TenantContext, account_id: str, changes: UpdateAccountInput
    ) -> Account:
        """Apply profile changes. The email address can never change."""
        with self._repository.unit_of_work(tenant) as store:
            account = self._load(store, account_id, for_update=True)
            raise_for_errors(update_errors(account, changes))

            fields = {
                name: value
                for name in ("first_name", "last_name")
                if (value := getattr(changes, name)) is not None and value != getattr(account, name)
            }
            if not fields:
                return account
            updated = store.update_account(account.account_id, **fields)
            store.write_audit_event(
                account_id=updated.account_id,
                person_id=updated.person_id,
                organization_id=updated.organization_id,
                event_type="account.updated",
                actor=updated.account_id,
                metadata={"fields": sorted(fields)},
            )
        return updated

    def deactivate(self, tenant: TenantContext, account_id: str) -> Account:
        """Block the account from authenticating. No-op when already deactivated."""
        with self._repository.unit_of_work(tenant) as store:
            account = self._load(store, account_id, for_update=True)
            if account.is_deactivated:
                return account
            updated = store.update_account(account.account_id, deactivated_at=_now())
            self._audit_state_change(store, updated, "account.deactivated")
        logger.info("account %s deactivated", updated.account_id)
        return updated

    def activate(self, tenant: TenantContext, account_id: str) -> Account:
        """Restore authentication eligibility. No-op when already active."""
        with self._repository.unit_of_work(tenant) as store:
            account = self._load(store, account_id, for_update=True)
            if not account.is_deactivated:
                return account
            updated = store.update_account(account.account_id, deactivated_at=None)
            self._audit_state_change(store, updated, "account.activated")
        logger.info("account %s activated", updated.account_id)
        return updated

    def check_authentication(self, tenant: TenantContext, account_id: str) -> Account:
        """Gate consulted by the credential subsystem after credentials verify.

        Raises :class:`AuthenticationDeniedError` carrying ``"deactivated"`` or
        ``"invitation_pending"``.
        """
        with self._repository.unit_of_work(tenant) as store:
            account = self._load(store, account_id)
        reason = authentication_denial_reason(account)
        if reason is not None:
            metrics.AUTHENTICATION_DENIED.labels(reason=reason).inc()
            logger.warning("authentication denied for account %s: %s", account.account_id, reason)
            raise AuthenticationDeniedError(reason)
        return account

    def list_staff(self, tenant: TenantContext) -> list[Account]:
        with self._repository.unit_of_work(tenant) as store:
            return store.list_staff()

    def search_accounts(self, tenant: TenantContext, filters: dict[str, str | None]) -> list[Account]:
        """Filter accounts by case-insensitive substrings of the filterable fields."""
        unsupported = sorted(set(filters) - set(FILTERABLE_FIELDS))
        if unsupported:
            raise InvalidArgumentError(f"unsupported filter fields: {', '.join(unsupported)}")
        active = {field: value for field, value in filters.items() if not is_blank(value)}
        with self._repository.unit_of_work(tenant) as store:
            return store.search_accounts(active)

    # -- invitations ----------------------------------------------------

    def invite_account(
        self, tenant: TenantContext, inviter_id: str, payload: InviteAccountInput
    ) -> Account:
        """Create a pre-activation account on behalf of ``inviter_id``.

        The inviter's ``invitations_count`` is incremented in the same
        transaction and may not exceed its ``invitation_limit``.
        """
        with self._repository.unit_of_work(tenant) as store:
            inviter = self._load(store, inviter_id, for_update=True)
            ensure_can_invite(inviter)

            now = _now()
            invitee = self._create_account(
                store,
                tenant,
                CreateAccountInput(
                    email=payload.email,
                    first_name=payload.first_name,
                    last_name=payload.last_name,
                    tos_agreement=None,
                    organization_id=inviter.organization_id,
                ),
                source="invitation",
                invitation={
                    "invitation_token": generate_invitation_token(),
                    "invitation_created_at": now,
                    "invitation_sent_at": now,
                    "invitation_limit": self._settings.default_invitation_limit,
                    "invited_by_id": inviter.account_id,
                    "invited_by_type": INVITER_TYPE,
                },
            )
            store.update_account(inviter.account_id, invitations_count=inviter.invitations_count + 1)
            store.write_audit_event(
                account_id=invitee.account_id,
                person_id=invitee.person_id,
                organization_id=invitee.organization_id,
                event_type="invitation.sent",
                actor=inviter.account_id,
                metadata={"email": invitee.email},
            )
        logger.info("account %s invited %s", inviter.account_id, invitee.account_id)
        return invitee

    def accept_invitation(
        self, tenant: TenantContext, token: str, tos_agreement: bool | None
    ) -> Account:
        """Mark the invitation behind ``token`` accepted and retire the token."""
        with self._repository.unit_of_work(tenant) as store:
            account = store.find_account_by_invitation_token(token)
            if account is None or account.invitation_accepted_at is not None:
                raise InvitationNotFoundError("invitation not found")
            now = _now()
            ensure_not_expired(account, now, self._settings.invitation_ttl_seconds)
            if tos_agreement is not True:
                raise ValidationError({"tos_agreement": [NOT_ACCEPTED]})

            accepted = store.update_account(
                account.account_id, invitation_accepted_at=now, invitation_token=None
            )
            store.write_audit_event(
                account_id=accepted.account_id,
                person_id=accepted.person_id,
                organization_id=accepted.organization_id,
                event_type="invitation.accepted",
                actor=accepted.account_id,
                metadata={"invited_by_id": accepted.invited_by_id},
            )
        logger.info("account %s accepted invitation", accepted.account_id)
        return accepted

    # -- history --------------------------------------------------------

    def account_history(self, tenant: TenantContext, account_id: str) -> list[AuditLogRecord]:
        """Audit events of an account, oldest first.

        Includes the ``person.created`` event of the person the account is
        bound to, so the history starts where the identity record began.
        """
        with self._repository.unit_of_work(tenant) as store:
            account = self._load(store, account_id)
            return store.list_account_history(account.account_id, account.person_id)

    # -- internals ------------------------------------------------------

    def _create_account(
        self,
        store: AccountStore,
        tenant: TenantContext,
        payload: CreateAccountInput,
        *,
        source: str,
        invitation: dict[str, Any] | None = None,
    ) -> Account:
        # validation -> person resolution -> normalization -> insert; do not reorder
        organization_id = tenant.resolve_organization(payload.organization_id)

        email_taken = (
            organization_id is not None
            and not is_blank(payload.email)
            and store.email_taken(organization_id, payload.email)
        )
        person_missing = False
        if payload.person_id is not None:
            bound = store.get_person(payload.person_id)
            person_missing = bound is None or (
                organization_id is not None and bound.organization_id != organization_id
            )
        raise_for_errors(
            creation_errors(
                payload,
                email_taken=email_taken,
                person_missing=person_missing,
                organization_missing=organization_id is None,
            )
        )

        person_id, outcome = self._resolve_person(store, organization_id, payload)

        email = payload.email.lower()

        account = store.insert_account(
            organization_id=organization_id,
            person_id=person_id,
            email=email,
            first_name=payload.first_name,
            last_name=payload.last_name,
            provider=payload.provider,
            uid=payload.uid,
            **(invitation or {}),
        )
        store.write_audit_event(
            account_id=account.account_id,
            person_id=person_id,
            organization_id=organization_id,
            event_type="account.created",
            actor=account.invited_by_id or account.account_id,
            metadata={
                "email": account.email,
                "person_resolution": outcome,
                "source": source,
            },
        )
        metrics.ACCOUNTS_CREATED.labels(source=source).inc()
        metrics.PERSON_RESOLUTION.labels(outcome=outcome).inc()
        logger.info(
            "account %s created in organization %s (person %s %s)",
            account.account_id,
            organization_id,
            person_id,
            outcome,
        )
        return account

    def _resolve_person(
        self, store: AccountStore, organization_id: str, payload: CreateAccountInput
    ) -> tuple[str, str]:
        """Return ``(person_id, outcome)`` for a new account.

        An explicit or nested person wins; otherwise the first person sharing
        the organization and email (compared as supplied) is reused, and a new
        person is seeded from the account only when none exists.
        """
        if payload.person_id is not None:
            return payload.person_id, "explicit"

        if payload.person is not None:
            person = store.insert_person(
                organization_id=organization_id,
                first_name=payload.person.first_name,
                last_name=payload.person.last_name,
                email=payload.person.email,
            )
            self._audit_person_created(store, person)
            return person.person_id, "nested"

        store.lock_person_email(organization_id, payload.email)
        existing = store.find_person_by_email(organization_id, payload.email)
        if existing is not None:
            return existing.person_id, "reused"

        person = store.insert_person(
            organization_id=organization_id,
            first_name=payload.first_name,
            last_name=payload.last_name,
            email=payload.email,
        )
        self._audit_person_created(store, person)
        return person.person_id, "created"

    def _load(self, store: AccountStore, account_id: str, *, for_update: bool = False) -> Account:
        account = store.get_account(account_id, for_update=for_update)
        if account is None:
            raise AccountNotFoundError("account not found")
        return account

    def _audit_state_change(self, store: AccountStore, account: Account, event_type: str) -> None:
        store.write_audit_event(
            account_id=account.account_id,
            person_id=account.person_id,
            organization_id=account.organization_id,
            event_type=event_type,
            actor=None,
            metadata={"deactivated_at": account.deactivated_at.isoformat() if account.deactivated_at else None},
        )

    def _audit_person_created(self, store: AccountStore, person: Person) -> None:
        store.write_audit_event(
            account_id=None,
            person_id=person.person_id,
            organization_id=person.organization_id,
            event_type="person.created",
            actor=None,
            metadata={"email": person.email},
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)
