from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BeforeValidator, Field, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Canonical codes mirror Postgres enums in `backend/db/migrations/001_init.sql`.
TipPoolStatus = Annotated[Literal["draft", "calculated", "finalized"], BeforeValidator(_to_lower_str)]
RecipientType = Annotated[Literal["venue", "promoter", "partner", "other"], BeforeValidator(_to_lower_str)]

Percentage = Annotated[Decimal, Field(ge=0, le=100, max_digits=5, decimal_places=2)]
HoursWorked = Annotated[Decimal, Field(ge=0, max_digits=6, decimal_places=2)]

RecipientName = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=255)]
Notes = Annotated[str, StringConstraints(max_length=1000)]

# Connected account ids are opaque processor identifiers (acct_...).
ConnectedAccountId = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=1, max_length=255, pattern=r"^acct_[A-Za-z0-9]+$"),
]
