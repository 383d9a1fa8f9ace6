"""Database repository for organization-scoped people and accounts."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator

from psycopg import Cursor, errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account
from .domain.errors import UniquenessConflictError
from .domain.person import Person
from .domain.tenant import TenantContext

ACCOUNT_COLUMNS = """
    account_id, organization_id, person_id, email, first_name, last_name, created_at,
    deactivated_at, provider, uid, invitation_token, invitation_created_at,
    invitation_sent_at, invitation_accepted_at, invitation_limit, invitations_count,
    invited_by_id, invited_by_type
"""

PERSON_COLUMNS = "person_id, organization_id, first_name, last_name, email, created_at"

UPDATABLE_ACCOUNT_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "deactivated_at",
        "invitation_token",
        "invitation_accepted_at",
        "invitations_count",
    }
)

# unique constraint name -> account field it protects
UNIQUE_CONSTRAINT_FIELDS = {
    "accounts_organization_email_key": "email",
    "accounts_invitation_token_key": "invitation_token",
}

STAFF_ROLES = ("admin", "super_admin")


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in identity_audit_log."""

    audit_id: int
    account_id: str | None
    person_id: str | None
    organization_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AccountRepository:
    """Postgres-backed persistence; every unit of work is one transaction."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def unit_of_work(self, tenant: TenantContext) -> Iterator["AccountStore"]:
        """Open a transaction scoped to ``tenant``.

        Commits when the block exits normally and rolls back on any exception,
        so a person inserted during account creation never outlives a failed
        account insert.
        """
        with self._pool.connection() as conn:
            with conn.transaction():
                with conn.cursor(row_factory=tuple_row) as cur:
                    if tenant.is_scoped:
                        cur.execute(
                            "SELECT set_config('app.organization_id', %s, true)",
                            (tenant.organization_id,),
                        )
                    yield AccountStore(cur, tenant)


class AccountStore:
    """Queries bound to a single transaction and tenant scope."""

    def __init__(self, cur: Cursor, tenant: TenantContext) -> None:
        self._cur = cur
        self._tenant = tenant

    def _scope(self, clauses: list[str], params: list[Any], column: str = "organization_id") -> None:
        if self._tenant.is_scoped:
            clauses.append(f"{column} = %s")
            params.append(self._tenant.organization_id)

    # -- people ---------------------------------------------------------

    def lock_person_email(self, organization_id: str, email: str) -> None:
        """Serialise lookup-or-create of a person for one (organization, email) pair."""
        self._cur.execute(
            "SELECT pg_advisory_xact_lock(hashtext(%s))",
            (f"person:{organization_id}:{email}",),
        )

    def find_person_by_email(self, organization_id: str, email: str) -> Person | None:
        self._cur.execute(
            f"""
            SELECT {PERSON_COLUMNS}
            FROM people
            WHERE organization_id = %s AND email = %s
            ORDER BY created_at, person_id
            LIMIT 1
            """,
            (organization_id, email),
        )
        row = self._cur.fetchone()
        return _map_person(row) if row else None

    def get_person(self, person_id: str) -> Person | None:
        clauses = ["person_id = %s"]
        params: list[Any] = [person_id]
        self._scope(clauses, params)
        self._cur.execute(
            f"SELECT {PERSON_COLUMNS} FROM people WHERE {' AND '.join(clauses)}",
            params,
        )
        row = self._cur.fetchone()
        return _map_person(row) if row else None

    def insert_person(
        self, *, organization_id: str, first_name: str, last_name: str, email: str
    ) -> Person:
        self._cur.execute(
            f"""
            INSERT INTO people (person_id, organization_id, first_name, last_name, email, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {PERSON_COLUMNS}
            """,
            (str(uuid.uuid4()), organization_id, first_name, last_name, email, _now()),
        )
        return _map_person(self._cur.fetchone())

    # -- accounts -------------------------------------------------------

    def email_taken(self, organization_id: str, email: str) -> bool:
        self._cur.execute(
            "SELECT 1 FROM accounts WHERE organization_id = %s AND lower(email) = lower(%s) LIMIT 1",
            (organization_id, email),
        )
        return self._cur.fetchone() is not None

    def insert_account(
        self,
        *,
        organization_id: str,
        person_id: str,
        email: str,
        first_name: str,
        last_name: str,
        provider: str | None = None,
        uid: str | None = None,
        invitation_token: str | None = None,
        invitation_created_at: datetime | None = None,
        invitation_sent_at: datetime | None = None,
        invitation_limit: int | None = None,
        invited_by_id: str | None = None,
        invited_by_type: str | None = None,
    ) -> Account:
        """Insert an account row, translating unique violations into conflicts."""
        try:
            self._cur.execute(
                f"""
                INSERT INTO accounts (
                    account_id, organization_id, person_id, email, first_name, last_name,
                    created_at, provider, uid, invitation_token, invitation_created_at,
                    invitation_sent_at, invitation_limit, invited_by_id, invited_by_type
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {ACCOUNT_COLUMNS}
                """,
                (
                    str(uuid.uuid4()),
                    organization_id,
                    person_id,
                    email,
                    first_name,
                    last_name,
                    _now(),
                    provider,
                    uid,
                    invitation_token,
                    invitation_created_at,
                    invitation_sent_at,
                    invitation_limit,
                    invited_by_id,
                    invited_by_type,
                ),
            )
        except pg_errors.UniqueViolation as exc:
            field = UNIQUE_CONSTRAINT_FIELDS.get(exc.diag.constraint_name or "", "email")
            raise UniquenessConflictError(field) from exc
        return _map_account(self._cur.fetchone())

    def get_account(self, account_id: str, *, for_update: bool = False) -> Account | None:
        """Fetch an account visible in the current scope or return ``None``."""
        clauses = ["account_id = %s"]
        params: list[Any] = [account_id]
        self._scope(clauses, params)
        lock = " FOR UPDATE" if for_update else ""
        self._cur.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE {' AND '.join(clauses)}{lock}",
            params,
        )
        row = self._cur.fetchone()
        return _map_account(row) if row else None

    def find_account_by_invitation_token(self, token: str) -> Account | None:
        clauses = ["invitation_token = %s"]
        params: list[Any] = [token]
        self._scope(clauses, params)
        self._cur.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE {' AND '.join(clauses)} FOR UPDATE",
            params,
        )
        row = self._cur.fetchone()
        return _map_account(row) if row else None

    def update_account(self, account_id: str, **fields: Any) -> Account:
        unknown = set(fields) - UPDATABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"cannot update account fields: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = %s" for name in fields)
        clauses = ["account_id = %s"]
        params: list[Any] = [*fields.values(), _now(), account_id]
        self._scope(clauses, params)
        self._cur.execute(
            f"""
            UPDATE accounts
            SET {assignments}, updated_at = %s
            WHERE {' AND '.join(clauses)}
            RETURNING {ACCOUNT_COLUMNS}
            """,
            params,
        )
        return _map_account(self._cur.fetchone())

    def list_staff(self) -> list[Account]:
        """Accounts holding an admin or super_admin role in the role subsystem."""
        clauses = ["EXISTS (SELECT 1 FROM account_roles r WHERE r.account_id = a.account_id AND r.role_name = ANY(%s))"]
        params: list[Any] = [list(STAFF_ROLES)]
        self._scope(clauses, params, column="a.organization_id")
        self._cur.execute(
            f"""
            SELECT {_prefixed(ACCOUNT_COLUMNS, 'a')}
            FROM accounts a
            WHERE {' AND '.join(clauses)}
            ORDER BY a.created_at, a.account_id
            """,
            params,
        )
        return [_map_account(row) for row in self._cur.fetchall()]

    def search_accounts(self, filters: dict[str, str]) -> list[Account]:
        """Case-insensitive substring match on the given (pre-vetted) columns."""
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in filters.items():
            clauses.append(f"{column} ILIKE %s ESCAPE '\\'")
            params.append(f"%{_escape_like(value)}%")
        self._scope(clauses, params)
        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        self._cur.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts {where_sql} ORDER BY created_at, account_id",
            params,
        )
        return [_map_account(row) for row in self._cur.fetchall()]

    # -- audit ----------------------------------------------------------

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        person_id: str | None,
        organization_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry inside the current transaction."""
        self._cur.execute(
            """
            INSERT INTO identity_audit_log (account_id, person_id, organization_id, event_type, actor, metadata)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (account_id, person_id, organization_id, event_type, actor, Json(metadata or {})),
        )

    def list_account_history(self, account_id: str, person_id: str) -> list[AuditLogRecord]:
        """Events written for the account plus the creation of its person, oldest first."""
        clauses = ["(account_id = %s OR (account_id IS NULL AND person_id = %s))"]
        params: list[Any] = [account_id, person_id]
        self._scope(clauses, params)
        self._cur.execute(
            f"""
            SELECT audit_id, account_id, person_id, organization_id, event_type, actor, metadata, created_at
            FROM identity_audit_log
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at, audit_id
            """,
            params,
        )
        return [_map_audit_record(row) for row in self._cur.fetchall()]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _prefixed(columns: str, alias: str) -> str:
    return ", ".join(f"{alias}.{name.strip()}" for name in columns.split(","))


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _map_audit_record(row: tuple) -> AuditLogRecord:
    return AuditLogRecord(
        audit_id=row[0],
        account_id=row[1],
        person_id=row[2],
        organization_id=row[3],
        event_type=row[4],
        actor=row[5],
        metadata=row[6] or {},
        created_at=row[7],
    )


def _map_person(row: tuple) -> Person:
    return Person(
        person_id=row[0],
        organization_id=row[1],
        first_name=row[2],
        last_name=row[3],
        email=row[4],
        created_at=row[5],
    )


def _map_account(row: tuple) -> Account:
    """Convert a raw database tuple into the domain ``Account`` dataclass."""
    return Account(
        account_id=row[0],
        organization_id=row[1],
        person_id=row[2],
        email=row[3],
        first_name=row[4],
        last_name=row[5],
        created_at=row[6],
        deactivated_at=row[7],
        provider=row[8],
        uid=row[9],
        invitation_token=row[10],
        invitation_created_at=row[11],
        invitation_sent_at=row[12],
        invitation_accepted_at=row[13],
        invitation_limit=row[14],
        invitations_count=row[15],
        invited_by_id=row[16],
        invited_by_type=row[17],
    )
