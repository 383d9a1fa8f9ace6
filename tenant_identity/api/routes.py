"""HTTP route definitions for the identity service."""

from __future__ import annotations

import logging

from datetime import datetime
from typing import Any, Iterator

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..config import get_settings
from ..domain.account import Account
from ..domain.contracts import CreateAccountInput, CreatePersonInput, InviteAccountInput, UpdateAccountInput
from ..domain.errors import (
    AuthenticationDeniedError,
    IdentityError,
    InvitationExpiredError,
    InvitationLimitError,
    UniquenessConflictError,
    ValidationError,
)
from ..domain.person import Person
from ..domain.service import AccountService
from ..domain.tenant import TenantContext
from ..repository import AuditLogRecord
from ..security.rate_limiter import build_rate_limiter, limiter_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class PersonPayload(BaseModel):
    """Person fields accepted directly or nested in an account payload."""

    first_name: str
    last_name: str
    email: str


class CreatePersonRequest(PersonPayload):
    organization_id: str | None = None


class PersonResponse(BaseModel):
    person_id: str
    organization_id: str
    first_name: str
    last_name: str
    email: str
    created_at: datetime

    @classmethod
    def from_domain(cls, person: Person) -> "PersonResponse":
        return cls(
            person_id=person.person_id,
            organization_id=person.organization_id,
            first_name=person.first_name,
            last_name=person.last_name,
            email=person.email,
            created_at=person.created_at,
        )


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate."""

    account_id: str
    organization_id: str
    person_id: str
    email: str
    first_name: str
    last_name: str
    full_name: str
    name_initials: str
    created_at: datetime
    deactivated: bool
    deactivated_at: datetime | None
    external_identity: bool
    invitation_pending: bool
    invitation_accepted_at: datetime | None
    invitation_limit: int | None
    invitations_count: int
    invited_by_id: str | None

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            organization_id=account.organization_id,
            person_id=account.person_id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            full_name=account.full_name(),
            name_initials=account.name_initials,
            created_at=account.created_at,
            deactivated=account.is_deactivated,
            deactivated_at=account.deactivated_at,
            external_identity=account.is_external_identity_account(),
            invitation_pending=account.invitation_pending,
            invitation_accepted_at=account.invitation_accepted_at,
            invitation_limit=account.invitation_limit,
            invitations_count=account.invitations_count,
            invited_by_id=account.invited_by_id,
        )


class CreateAccountRequest(BaseModel):
    """Self-registration payload; the terms of service must be presented."""

    email: str
    first_name: str
    last_name: str
    tos_agreement: bool
    organization_id: str | None = None
    person_id: str | None = None
    person: PersonPayload | None = None
    provider: str | None = None
    uid: str | None = None


class UpdateAccountRequest(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None


class InviteAccountRequest(BaseModel):
    email: str
    first_name: str
    last_name: str


class AcceptInvitationRequest(BaseModel):
    token: str = Field(..., min_length=1)
    tos_agreement: bool | None = None


class InvitationResponse(BaseModel):
    """Invitee plus the token the invitation subsystem delivers."""

    account: AccountResponse
    invitation_token: str


class AuthenticationResponse(BaseModel):
    account_id: str
    active_for_authentication: bool = True


class HistoryEntry(BaseModel):
    """One audit event in an account's history."""

    audit_id: int
    account_id: str | None
    person_id: str | None
    organization_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_record(cls, record: AuditLogRecord) -> "HistoryEntry":
        return cls(
            audit_id=record.audit_id,
            account_id=record.account_id,
            person_id=record.person_id,
            organization_id=record.organization_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )


settings = get_settings()

rate_limiter = build_rate_limiter(settings)


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_tenant(
    organization_id: str | None = Header(default=None, alias="X-Organization-ID"),
) -> Iterator[TenantContext]:
    """Bind the request's organization scope; no header means the system scope."""
    tenant = TenantContext.for_organization(organization_id) if organization_id else TenantContext.system()
    logger.debug("tenant scope bound: %s", tenant.organization_id or "<system>")
    try:
        yield tenant
    finally:
        logger.debug("tenant scope released: %s", tenant.organization_id or "<system>")


def _enforce_rate_limit(key: str) -> None:
    if not rate_limiter.allow(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


@router.post("/people", response_model=PersonResponse, status_code=status.HTTP_201_CREATED)
def create_person(
    payload: CreatePersonRequest,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> PersonResponse:
    try:
        person = service.create_person(
            tenant,
            CreatePersonInput(
                first_name=payload.first_name,
                last_name=payload.last_name,
                email=payload.email,
                organization_id=payload.organization_id,
            ),
        )
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return PersonResponse.from_domain(person)


@router.get("/people/{person_id}", response_model=PersonResponse)
def get_person(
    person_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> PersonResponse:
    try:
        person = service.get_person(tenant, person_id)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return PersonResponse.from_domain(person)


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: CreateAccountRequest,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Register an account in the caller's organization."""
    _enforce_rate_limit(limiter_key("create", tenant.organization_id or payload.organization_id))
    nested = payload.person
    try:
        account = service.create_account(
            tenant,
            CreateAccountInput(
                email=payload.email,
                first_name=payload.first_name,
                last_name=payload.last_name,
                tos_agreement=payload.tos_agreement,
                organization_id=payload.organization_id,
                person_id=payload.person_id,
                person=CreatePersonInput(
                    first_name=nested.first_name,
                    last_name=nested.last_name,
                    email=nested.email,
                )
                if nested
                else None,
                provider=payload.provider,
                uid=payload.uid,
            ),
        )
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/accounts", response_model=list[AccountResponse])
def search_accounts(
    first_name: str | None = Query(default=None),
    last_name: str | None = Query(default=None),
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> list[AccountResponse]:
    """Filter accounts by first and/or last name substrings."""
    try:
        accounts = service.search_accounts(tenant, {"first_name": first_name, "last_name": last_name})
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return [AccountResponse.from_domain(account) for account in accounts]


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Retrieve an account visible in the requester's organization."""
    account = service.get_account(tenant, account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    return AccountResponse.from_domain(account)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: str,
    payload: UpdateAccountRequest,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.update_account(
            tenant,
            account_id,
            UpdateAccountInput(
                first_name=payload.first_name,
                last_name=payload.last_name,
                email=payload.email,
            ),
        )
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/deactivate", response_model=AccountResponse)
def deactivate_account(
    account_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.deactivate(tenant, account_id)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/activate", response_model=AccountResponse)
def activate_account(
    account_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.activate(tenant, account_id)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/authentication", response_model=AuthenticationResponse)
def check_authentication(
    account_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> AuthenticationResponse:
    """Tell the credential subsystem whether a verified account may sign in."""
    _enforce_rate_limit(limiter_key("auth", tenant.organization_id, account_id))
    try:
        account = service.check_authentication(tenant, account_id)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AuthenticationResponse(account_id=account.account_id)


@router.post(
    "/accounts/{account_id}/invitations",
    response_model=InvitationResponse,
    status_code=status.HTTP_201_CREATED,
)
def invite_account(
    account_id: str,
    payload: InviteAccountRequest,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> InvitationResponse:
    """Invite a new account on behalf of ``account_id``."""
    _enforce_rate_limit(limiter_key("invite", tenant.organization_id, account_id))
    try:
        invitee = service.invite_account(
            tenant,
            account_id,
            InviteAccountInput(
                email=payload.email,
                first_name=payload.first_name,
                last_name=payload.last_name,
            ),
        )
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return InvitationResponse(
        account=AccountResponse.from_domain(invitee),
        invitation_token=invitee.invitation_token or "",
    )


@router.post("/invitations/accept", response_model=AccountResponse)
def accept_invitation(
    payload: AcceptInvitationRequest,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.accept_invitation(tenant, payload.token, payload.tos_agreement)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/staff", response_model=list[AccountResponse])
def list_staff(
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> list[AccountResponse]:
    """Accounts holding the admin or super_admin role."""
    return [AccountResponse.from_domain(account) for account in service.list_staff(tenant)]


@router.get("/accounts/{account_id}/history", response_model=list[HistoryEntry])
def account_history(
    account_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountService = Depends(get_service),
) -> list[HistoryEntry]:
    """Audit events of an account and the creation of its person, oldest first."""
    try:
        records = service.account_history(tenant, account_id)
    except IdentityError as exc:
        raise _http_error(exc) from exc
    return [HistoryEntry.from_record(record) for record in records]


def _http_error(exc: IdentityError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={"errors": exc.errors}
        )
    if isinstance(exc, UniquenessConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail={"conflict": exc.field, "message": str(exc)}
        )
    if isinstance(exc, AuthenticationDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"reason": exc.reason})
    if isinstance(exc, LookupError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvitationLimitError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, InvitationExpiredError):
        return HTTPException(status_code=status.HTTP_410_GONE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
