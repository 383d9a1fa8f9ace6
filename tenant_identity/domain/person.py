from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class Person:
    """Canonical per-organization identity, independent of login capability."""

    person_id: str
    organization_id: str
    first_name: str
    last_name: str
    email: str
    created_at: datetime
