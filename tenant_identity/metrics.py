"""Prometheus counters for account lifecycle events."""

from __future__ import annotations

from prometheus_client import Counter

ACCOUNTS_CREATED = Counter(
    "identity_accounts_created_total",
    "Accounts created, by creation path",
    ["source"],
)

PERSON_RESOLUTION = Counter(
    "identity_person_resolution_total",
    "How a new account was bound to a person record",
    ["outcome"],
)

AUTHENTICATION_DENIED = Counter(
    "identity_authentication_denied_total",
    "Authentication gate rejections, by reason",
    ["reason"],
)
