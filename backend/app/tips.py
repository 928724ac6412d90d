"""
Tip pool persistence.

A pool moves draft -> calculated -> finalized. Editing members of a calculated
pool drops it back to draft; a finalized pool is immutable. Calculation and
finalization lock the pool row so they serialize against each other.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Optional, Sequence

from .distribution import DistributionError, compute_tip_pool
from .jobs import QueueName
from .logs import json_log


class TipPoolError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


_POOL_COLUMNS = """
    id, organization_id, name, start_date, end_date, total_tips, status, notes,
    created_by, created_at, updated_at
"""

_MEMBER_COLUMNS = """
    id, tip_pool_id, user_id, hours_worked, tips_earned, pool_share, final_amount,
    created_at, updated_at
"""


def _load_pool(cur, pool_id: str, organization_id: str, *, for_update: bool = False) -> dict[str, Any]:
    cur.execute(
        f"""
        SELECT {_POOL_COLUMNS}
        FROM tip_pools
        WHERE id = %s AND organization_id = %s
        {"FOR UPDATE" if for_update else ""}
        """,
        (pool_id, organization_id),
    )
    pool = cur.fetchone()
    if not pool:
        raise TipPoolError(404, "tip pool not found")
    return pool


def _members(cur, pool_id: str) -> list[dict[str, Any]]:
    # Stable order: the last member absorbs the rounding residue.
    cur.execute(
        f"""
        SELECT {_MEMBER_COLUMNS}
        FROM tip_pool_members
        WHERE tip_pool_id = %s
        ORDER BY created_at ASC, id ASC
        """,
        (pool_id,),
    )
    return cur.fetchall()


def list_pools(cur, organization_id: str, *, status: Optional[str] = None, limit: int = 20, offset: int = 0):
    cur.execute(
        """
        SELECT COUNT(*) AS count
        FROM tip_pools
        WHERE organization_id = %s AND (%s::text IS NULL OR status::text = %s)
        """,
        (organization_id, status, status),
    )
    total = int((cur.fetchone() or {}).get("count") or 0)
    cur.execute(
        f"""
        SELECT {_POOL_COLUMNS}
        FROM tip_pools
        WHERE organization_id = %s AND (%s::text IS NULL OR status::text = %s)
        ORDER BY created_at DESC
        LIMIT %s OFFSET %s
        """,
        (organization_id, status, status, limit, offset),
    )
    return {"pools": cur.fetchall(), "total": total}


def get_pool(cur, pool_id: str, organization_id: str) -> dict[str, Any]:
    pool = _load_pool(cur, pool_id, organization_id)
    return {**pool, "members": _members(cur, pool_id)}


def create_pool(
    cur,
    *,
    organization_id: str,
    name: str,
    start_date: date,
    end_date: date,
    created_by: str,
    notes: Optional[str] = None,
) -> dict[str, Any]:
    if end_date < start_date:
        raise TipPoolError(400, "end_date must be on or after start_date")
    cur.execute(
        f"""
        INSERT INTO tip_pools (id, organization_id, name, start_date, end_date, notes, created_by)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
        RETURNING {_POOL_COLUMNS}
        """,
        (organization_id, name, start_date, end_date, notes, created_by),
    )
    pool = cur.fetchone()
    json_log("info", "tips.pool.created", pool_id=pool["id"], name=name)
    return pool


_UPDATABLE = ("name", "notes")


def update_pool(cur, pool_id: str, organization_id: str, patch: dict[str, Any]) -> dict[str, Any]:
    pool = _load_pool(cur, pool_id, organization_id, for_update=True)
    if pool["status"] == "finalized":
        raise TipPoolError(409, "cannot modify a finalized tip pool")
    fields = []
    params: list[Any] = []
    for k in _UPDATABLE:
        if k not in patch:
            continue
        if k == "name" and not patch[k]:
            raise TipPoolError(400, "name cannot be empty")
        fields.append(f"{k} = %s")
        params.append(patch[k])
    if not fields:
        return pool
    params.append(pool_id)
    cur.execute(
        f"""
        UPDATE tip_pools
        SET {', '.join(fields)}, updated_at = now()
        WHERE id = %s
        RETURNING {_POOL_COLUMNS}
        """,
        params,
    )
    updated = cur.fetchone()
    json_log("info", "tips.pool.updated", pool_id=pool_id, fields=sorted(k for k in _UPDATABLE if k in patch))
    return updated


def set_members(cur, pool_id: str, organization_id: str, members: Sequence[tuple[str, Any]]) -> list[dict[str, Any]]:
    """Upsert `(user_id, hours_worked)` rows. Hours changed, so a calculated pool goes back to draft."""
    pool = _load_pool(cur, pool_id, organization_id, for_update=True)
    if pool["status"] == "finalized":
        raise TipPoolError(409, "cannot modify members of a finalized tip pool")
    for user_id, hours in members:
        if hours is None or float(hours) < 0:
            raise TipPoolError(400, "hours worked cannot be negative")
        cur.execute(
            """
            INSERT INTO tip_pool_members (id, tip_pool_id, user_id, hours_worked)
            VALUES (gen_random_uuid(), %s, %s, %s)
            ON CONFLICT (tip_pool_id, user_id)
            DO UPDATE SET hours_worked = EXCLUDED.hours_worked, updated_at = now()
            """,
            (pool_id, user_id, hours),
        )
    if pool["status"] == "calculated":
        cur.execute("UPDATE tip_pools SET status = 'draft', updated_at = now() WHERE id = %s", (pool_id,))
    return _members(cur, pool_id)


def remove_member(cur, pool_id: str, organization_id: str, user_id: str) -> None:
    pool = _load_pool(cur, pool_id, organization_id, for_update=True)
    if pool["status"] == "finalized":
        raise TipPoolError(409, "cannot modify members of a finalized tip pool")
    cur.execute(
        "DELETE FROM tip_pool_members WHERE tip_pool_id = %s AND user_id = %s RETURNING id",
        (pool_id, user_id),
    )
    if not cur.fetchone():
        raise TipPoolError(404, "member not found")
    if pool["status"] == "calculated":
        cur.execute("UPDATE tip_pools SET status = 'draft', updated_at = now() WHERE id = %s", (pool_id,))


def calculate_pool(cur, pool_id: str, organization_id: str) -> dict[str, Any]:
    pool = _load_pool(cur, pool_id, organization_id, for_update=True)
    if pool["status"] == "finalized":
        raise TipPoolError(409, "cannot recalculate a finalized tip pool")

    cur.execute(
        """
        SELECT COALESCE(SUM(tip_amount), 0) AS total_tips
        FROM orders
        WHERE organization_id = %s
          AND status = 'completed'
          AND created_at >= %s::date
          AND created_at < (%s::date + interval '1 day')
        """,
        (organization_id, pool["start_date"], pool["end_date"]),
    )
    total_tips = int((cur.fetchone() or {}).get("total_tips") or 0)

    cur.execute(
        """
        SELECT user_id, COALESCE(SUM(tip_amount), 0) AS earned
        FROM orders
        WHERE organization_id = %s
          AND status = 'completed'
          AND created_at >= %s::date
          AND created_at < (%s::date + interval '1 day')
          AND tip_amount > 0
          AND user_id IS NOT NULL
        GROUP BY user_id
        """,
        (organization_id, pool["start_date"], pool["end_date"]),
    )
    earned = {str(r["user_id"]): int(r["earned"] or 0) for r in cur.fetchall()}

    members = _members(cur, pool_id)
    try:
        shares = compute_tip_pool(total_tips, [(m["id"], m["hours_worked"]) for m in members])
    except DistributionError as ex:
        raise TipPoolError(400, ex.message) from ex

    by_id = {str(m["id"]): m for m in members}
    for share in shares:
        member = by_id[str(share.member_id)]
        cur.execute(
            """
            UPDATE tip_pool_members
            SET tips_earned = %s, pool_share = %s, final_amount = %s, updated_at = now()
            WHERE id = %s
            """,
            (earned.get(str(member["user_id"]), 0), share.pool_share, share.pool_share, share.member_id),
        )
    cur.execute(
        "UPDATE tip_pools SET total_tips = %s, status = 'calculated', updated_at = now() WHERE id = %s",
        (total_tips, pool_id),
    )
    json_log("info", "tips.pool.calculated", pool_id=pool_id, total_tips=total_tips, member_count=len(members))
    return get_pool(cur, pool_id, organization_id)


def finalize_pool(cur, jobs, pool_id: str, organization_id: str) -> dict[str, Any]:
    pool = _load_pool(cur, pool_id, organization_id, for_update=True)
    if pool["status"] == "finalized":
        return pool
    if pool["status"] != "calculated":
        raise TipPoolError(409, "cannot finalize a pool that has not been calculated")

    cur.execute(
        f"""
        UPDATE tip_pools SET status = 'finalized', updated_at = now()
        WHERE id = %s
        RETURNING {_POOL_COLUMNS}
        """,
        (pool_id,),
    )
    finalized = cur.fetchone()

    cur.execute(
        """
        SELECT m.id, m.user_id, m.final_amount, u.payout_account_id
        FROM tip_pool_members m
        LEFT JOIN users u ON u.id = m.user_id
        WHERE m.tip_pool_id = %s
        ORDER BY m.created_at ASC, m.id ASC
        """,
        (pool_id,),
    )
    queued = 0
    for m in cur.fetchall():
        amount = int(m.get("final_amount") or 0)
        if amount <= 0:
            continue
        if not m.get("payout_account_id"):
            json_log("warning", "tips.pool.member_without_payout_account", pool_id=pool_id, user_id=m["user_id"])
            continue
        key = f"tip_out:{pool_id}:{m['id']}"
        jobs.enqueue(
            QueueName.PAYOUT_PROCESSING,
            {
                "source_type": "tip_out",
                "source_id": str(m["id"]),
                "amount": amount,
                "recipient_ref": m["payout_account_id"],
                "organization_id": str(organization_id),
                "idempotency_key": key,
            },
            idempotency_key=key,
            cur=cur,
        )
        queued += 1
    json_log("info", "tips.pool.finalized", pool_id=pool_id, payouts_queued=queued)
    return finalized


def delete_pool(cur, pool_id: str, organization_id: str) -> None:
    cur.execute(
        "DELETE FROM tip_pools WHERE id = %s AND organization_id = %s AND status = 'draft' RETURNING id",
        (pool_id, organization_id),
    )
    if cur.fetchone():
        json_log("info", "tips.pool.deleted", pool_id=pool_id)
        return
    _load_pool(cur, pool_id, organization_id)
    raise TipPoolError(409, "only draft tip pools can be deleted")
