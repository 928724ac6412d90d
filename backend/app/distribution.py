"""
Penny-exact money distribution.

Everything here is pure: integer cents in, integer cents out, no I/O. Both
algorithms conserve the input total exactly; rounding residue is absorbed by a
single, deterministic party (the platform share for revenue splits, the last
member for tip pools).
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Sequence

CENT = Decimal("1")
HUNDRED = Decimal("100")


class DistributionError(ValueError):
    """Business validation failure; never retryable."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def to_decimal(v: Any) -> Decimal:
    if isinstance(v, Decimal):
        return v
    # str() first so floats like 12.5 don't drag binary noise in.
    return Decimal(str(v))


def round_half_up(v: Decimal) -> int:
    return int(v.quantize(CENT, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class SplitShare:
    split_id: Any
    percentage: Decimal
    amount: int


@dataclass(frozen=True)
class SplitResult:
    gross_sales: int
    shares: list[SplitShare]
    total_split_amount: int
    your_share: int


@dataclass(frozen=True)
class MemberShare:
    member_id: Any
    hours_worked: Decimal
    pool_share: int


def compute_revenue_split(gross_sales: int, splits: Sequence[tuple[Any, Any]]) -> SplitResult:
    """
    Split `gross_sales` cents across `(split_id, percentage)` pairs, in order.

    Each amount is round_half_up(G * p / 100). The platform's share is the
    remainder G - sum(amounts), never computed independently, so
    sum(amounts) + your_share == G always holds. Active percentages are not
    required to sum to <= 100 when stored; amounts are capped at whatever is
    still unallocated so the report can never go negative.
    """
    gross = int(gross_sales)
    if gross < 0:
        raise DistributionError("invalid_gross", "gross sales cannot be negative")

    shares: list[SplitShare] = []
    allocated = 0
    for split_id, raw_pct in splits:
        pct = to_decimal(raw_pct)
        if pct < 0 or pct > HUNDRED:
            raise DistributionError("invalid_percentage", "percentage must be between 0 and 100")
        amount = round_half_up(Decimal(gross) * pct / HUNDRED)
        amount = min(amount, gross - allocated)
        allocated += amount
        shares.append(SplitShare(split_id=split_id, percentage=pct, amount=amount))

    return SplitResult(
        gross_sales=gross,
        shares=shares,
        total_split_amount=allocated,
        your_share=gross - allocated,
    )


def compute_tip_pool(total_tips: int, members: Sequence[tuple[Any, Any]]) -> list[MemberShare]:
    """
    Distribute `total_tips` cents across `(member_id, hours_worked)` pairs by
    hours worked.

    Every member except the last gets round_half_up(hours / total_hours * T);
    the last member gets exactly what is left, so the shares always sum to T.
    Callers must pass members in a stable order (the last one absorbs the
    rounding residue) for recalculation to be reproducible.
    """
    total = int(total_tips)
    if total < 0:
        raise DistributionError("invalid_total", "total tips cannot be negative")
    if not members:
        raise DistributionError("no_members", "tip pool has no members")

    hours = [(member_id, to_decimal(h or 0)) for member_id, h in members]
    if any(h < 0 for _, h in hours):
        raise DistributionError("invalid_hours", "hours worked cannot be negative")
    total_hours = sum((h for _, h in hours), Decimal("0"))
    if total_hours <= 0:
        raise DistributionError("zero_hours", "total hours worked cannot be zero")

    out: list[MemberShare] = []
    distributed = 0
    last = len(hours) - 1
    for i, (member_id, h) in enumerate(hours):
        if i == last:
            share = total - distributed
        else:
            share = round_half_up(Decimal(total) * h / total_hours)
            # Rounding up several early members could overdraw the pool.
            share = min(share, total - distributed)
            distributed += share
        out.append(MemberShare(member_id=member_id, hours_worked=h, pool_share=share))
    return out
