"""Explicit organization scope passed into every account read and write."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TenantContext:
    """Organization boundary for a single unit of work.

    A context without an ``organization_id`` is the administrative/system scope:
    reads are unfiltered and writes must name their organization explicitly.
    """

    organization_id: str | None = None

    @classmethod
    def system(cls) -> "TenantContext":
        return cls(organization_id=None)

    @classmethod
    def for_organization(cls, organization_id: str) -> "TenantContext":
        if not organization_id:
            raise ValueError("organization_id is required for a scoped context")
        return cls(organization_id=organization_id)

    @property
    def is_scoped(self) -> bool:
        return self.organization_id is not None

    def allows(self, organization_id: str | None) -> bool:
        """Return ``True`` when a record owned by ``organization_id`` is visible in this scope."""
        return not self.is_scoped or organization_id == self.organization_id

    def resolve_organization(self, candidate: str | None = None) -> str | None:
        """Resolve the organization a write lands in.

        The scoped organization always wins over ``candidate``. In the system
        scope ``None`` means the caller named no organization, which write
        validation reports as a blank ``organization_id``.
        """
        return self.organization_id or candidate or None
