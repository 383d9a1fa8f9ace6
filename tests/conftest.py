from __future__ import annotations

import copy
import dataclasses
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tenant_identity.api import routes
from tenant_identity.config import Settings
from tenant_identity.domain.account import Account
from tenant_identity.domain.contracts import CreateAccountInput
from tenant_identity.domain.errors import UniquenessConflictError
from tenant_identity.domain.person import Person
from tenant_identity.domain.service import AccountService
from tenant_identity.domain.tenant import TenantContext
from tenant_identity.repository import STAFF_ROLES, AuditLogRecord
from tenant_identity.security.rate_limiter import SlidingWindowRateLimiter


class InMemoryAccountRepository:
    """In-memory repository mimicking the Postgres-backed transaction and constraints."""

    def __init__(self) -> None:
        self.people: dict[str, Person] = {}
        self.accounts: dict[str, Account] = {}
        self.roles: set[tuple[str, str]] = set()
        self.audit_log: list[AuditLogRecord] = []
        self.audit_seq = 0
        self.rollbacks = 0

    @contextmanager
    def unit_of_work(self, tenant: TenantContext):
        snapshot = copy.deepcopy((self.people, self.accounts, self.audit_log, self.audit_seq))
        try:
            yield InMemoryStore(self, tenant)
        except BaseException:
            self.people, self.accounts, self.audit_log, self.audit_seq = snapshot
            self.rollbacks += 1
            raise

    def grant_role(self, account_id: str, role_name: str) -> None:
        self.roles.add((account_id, role_name))


class InMemoryStore:
    def __init__(self, repo: InMemoryAccountRepository, tenant: TenantContext) -> None:
        self._repo = repo
        self._tenant = tenant

    def _visible(self, organization_id: str | None) -> bool:
        return self._tenant.allows(organization_id)

    def lock_person_email(self, organization_id: str, email: str) -> None:
        pass

    def find_person_by_email(self, organization_id: str, email: str):
        matches = [
            person
            for person in self._repo.people.values()
            if person.organization_id == organization_id and person.email == email
        ]
        matches.sort(key=lambda p: (p.created_at, p.person_id))
        return dataclasses.replace(matches[0]) if matches else None

    def get_person(self, person_id: str):
        person = self._repo.people.get(person_id)
        if person is None or not self._visible(person.organization_id):
            return None
        return dataclasses.replace(person)

    def insert_person(self, *, organization_id, first_name, last_name, email):
        person = Person(
            person_id=str(uuid.uuid4()),
            organization_id=organization_id,
            first_name=first_name,
            last_name=last_name,
            email=email,
            created_at=datetime.now(timezone.utc),
        )
        self._repo.people[person.person_id] = person
        return dataclasses.replace(person)

    def email_taken(self, organization_id: str, email: str) -> bool:
        return any(
            account.organization_id == organization_id and account.email.lower() == email.lower()
            for account in self._repo.accounts.values()
        )

    def insert_account(self, *, organization_id, person_id, email, **fields):
        for existing in self._repo.accounts.values():
            if existing.organization_id == organization_id and existing.email == email:
                raise UniquenessConflictError("email")
            token = fields.get("invitation_token")
            if token is not None and existing.invitation_token == token:
                raise UniquenessConflictError("invitation_token")
        account = Account(
            account_id=str(uuid.uuid4()),
            organization_id=organization_id,
            person_id=person_id,
            email=email,
            created_at=datetime.now(timezone.utc),
            **fields,
        )
        self._repo.accounts[account.account_id] = account
        return dataclasses.replace(account)

    def get_account(self, account_id: str, *, for_update: bool = False):
        account = self._repo.accounts.get(account_id)
        if account is None or not self._visible(account.organization_id):
            return None
        return dataclasses.replace(account)

    def find_account_by_invitation_token(self, token: str):
        for account in self._repo.accounts.values():
            if account.invitation_token == token and self._visible(account.organization_id):
                return dataclasses.replace(account)
        return None

    def update_account(self, account_id: str, **fields):
        account = self._repo.accounts[account_id]
        updated = dataclasses.replace(account, **fields)
        self._repo.accounts[account_id] = updated
        return dataclasses.replace(updated)

    def list_staff(self):
        staff_ids = {account_id for account_id, role in self._repo.roles if role in STAFF_ROLES}
        return self._sorted(
            account
            for account in self._repo.accounts.values()
            if account.account_id in staff_ids and self._visible(account.organization_id)
        )

    def search_accounts(self, filters: dict[str, str]):
        return self._sorted(
            account
            for account in self._repo.accounts.values()
            if self._visible(account.organization_id)
            and all(value.lower() in getattr(account, field).lower() for field, value in filters.items())
        )

    def write_audit_event(self, *, account_id, person_id, organization_id, event_type, actor, metadata=None):
        self._repo.audit_seq += 1
        self._repo.audit_log.append(
            AuditLogRecord(
                audit_id=self._repo.audit_seq,
                account_id=account_id,
                person_id=person_id,
                organization_id=organization_id,
                event_type=event_type,
                actor=actor,
                metadata=metadata or {},
                created_at=datetime.now(timezone.utc),
            )
        )

    def list_account_history(self, account_id, person_id):
        return [
            record
            for record in self._repo.audit_log
            if self._visible(record.organization_id)
            and (
                record.account_id == account_id
                or (record.account_id is None and record.person_id == person_id)
            )
        ]

    @staticmethod
    def _sorted(accounts):
        return [
            dataclasses.replace(account)
            for account in sorted(accounts, key=lambda a: (a.created_at, a.account_id))
        ]


@pytest.fixture
def settings() -> Settings:
    return Settings(invitation_ttl_seconds=3600, default_invitation_limit=None)


@pytest.fixture
def repository() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture
def service(repository, settings) -> AccountService:
    return AccountService(repository, settings)


@pytest.fixture
def tenant() -> TenantContext:
    return TenantContext.for_organization("org-1")


@pytest.fixture
def make_account(service, tenant):
    """Register a valid account, overriding any input field."""

    def _make(email: str = "ada@example.com", scope: TenantContext | None = None, **overrides):
        payload = CreateAccountInput(
            email=email,
            first_name=overrides.pop("first_name", "Ada"),
            last_name=overrides.pop("last_name", "Lovelace"),
            tos_agreement=overrides.pop("tos_agreement", True),
            **overrides,
        )
        return service.create_account(scope or tenant, payload)

    return _make


@pytest.fixture
def api_client(service, repository):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    app.state.account_service = service

    original_limiter = routes.rate_limiter
    routes.rate_limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60)

    with TestClient(app) as client:
        yield client, service, repository

    routes.rate_limiter = original_limiter
