"""
Payout state machine.

    pending -> processing -> paid | failed
    paid -> failed   (the processor can fail a payout after reporting it paid)

Rows are created either by the payout worker (internal transfers, keyed by
idempotency_key) or by processor payout events on connected accounts (keyed by
stripe_payout_id). Same conditional-UPDATE discipline as orders.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from .account_sync import organization_for_account
from .audit import write_audit
from .logs import json_log


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


ALLOWED_SOURCES: dict[PayoutStatus, tuple[PayoutStatus, ...]] = {
    PayoutStatus.PROCESSING: (PayoutStatus.PENDING,),
    PayoutStatus.PAID: (PayoutStatus.PENDING, PayoutStatus.PROCESSING),
    PayoutStatus.FAILED: (PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.PAID),
}


def _sources(target: PayoutStatus) -> list[str]:
    return [s.value for s in ALLOWED_SOURCES[target]]


_RETURNING = """
    id, organization_id, user_id, type, amount, status, stripe_transfer_id, stripe_payout_id,
    destination, idempotency_key, source_type, source_id, failure_code, failure_message
"""


def _insert_connect_payout(
    cur,
    *,
    organization_id: str,
    stripe_payout_id: str,
    amount: int,
    status: PayoutStatus,
    destination: Optional[str],
    failure_code: Optional[str] = None,
    failure_message: Optional[str] = None,
) -> Optional[dict[str, Any]]:
    cur.execute(
        f"""
        INSERT INTO payouts
          (id, organization_id, type, amount, status, stripe_payout_id, destination,
           description, failure_code, failure_message, processed_at)
        VALUES
          (gen_random_uuid(), %s, 'connect_payout', %s, %s, %s, %s, %s, %s, %s,
           CASE WHEN %s = 'paid' THEN now() ELSE NULL END)
        ON CONFLICT (stripe_payout_id) DO NOTHING
        RETURNING {_RETURNING}
        """,
        (
            organization_id,
            amount,
            status.value,
            stripe_payout_id,
            destination,
            f"Payout to {destination}" if destination else "Payout",
            failure_code,
            failure_message,
            status.value,
        ),
    )
    return cur.fetchone()


def record_payout_created(
    cur,
    *,
    stripe_payout_id: str,
    amount: int,
    destination: Optional[str],
    account: Optional[str],
    source_transfer_id: Optional[str] = None,
) -> Optional[dict[str, Any]]:
    """
    Link a processor payout to its row. Internal transfers are matched by
    transfer id; connected-account payouts get a row of their own.
    """
    if source_transfer_id:
        cur.execute(
            f"""
            UPDATE payouts
            SET stripe_payout_id = COALESCE(stripe_payout_id, %s),
                status = 'processing',
                updated_at = now()
            WHERE stripe_transfer_id = %s
              AND status::text = ANY(%s)
              AND NOT EXISTS (SELECT 1 FROM payouts p2 WHERE p2.stripe_payout_id = %s)
            RETURNING {_RETURNING}
            """,
            (stripe_payout_id, source_transfer_id, _sources(PayoutStatus.PROCESSING), stripe_payout_id),
        )
        row = cur.fetchone()
        if row:
            json_log("info", "payouts.processing", payout_id=row["id"], stripe_payout_id=stripe_payout_id)
            return row

    org_id = organization_for_account(cur, account) if account else None
    if not org_id:
        json_log("warning", "payouts.created.unknown_account", account=account, stripe_payout_id=stripe_payout_id)
        return None
    row = _insert_connect_payout(
        cur,
        organization_id=org_id,
        stripe_payout_id=stripe_payout_id,
        amount=amount,
        status=PayoutStatus.PROCESSING,
        destination=destination,
    )
    if not row:
        json_log("info", "payouts.created.no_transition", stripe_payout_id=stripe_payout_id)
        return None
    write_audit(
        cur,
        organization_id=org_id,
        action="connect_payout.created",
        entity_type="payout",
        entity_id=stripe_payout_id,
        details={"amount": amount, "destination": destination},
    )
    json_log("info", "payouts.created", payout_id=row["id"], stripe_payout_id=stripe_payout_id, amount=amount)
    return row


def _transition_by_payout_id(
    cur,
    target: PayoutStatus,
    *,
    stripe_payout_id: str,
    amount: int,
    destination: Optional[str],
    account: Optional[str],
    failure_code: Optional[str] = None,
    failure_message: Optional[str] = None,
) -> Optional[dict[str, Any]]:
    cur.execute(
        f"""
        UPDATE payouts
        SET status = %s,
            destination = COALESCE(destination, %s),
            failure_code = %s,
            failure_message = %s,
            processed_at = CASE WHEN %s = 'paid' THEN now() ELSE processed_at END,
            updated_at = now()
        WHERE stripe_payout_id = %s
          AND status::text = ANY(%s)
        RETURNING {_RETURNING}
        """,
        (
            target.value,
            destination,
            failure_code,
            failure_message,
            target.value,
            stripe_payout_id,
            _sources(target),
        ),
    )
    row = cur.fetchone()
    if row:
        return row

    # The terminal event can arrive before payout.created; record it directly.
    # If a row already exists this is a no-op.
    org_id = organization_for_account(cur, account) if account else None
    if not org_id:
        return None
    return _insert_connect_payout(
        cur,
        organization_id=org_id,
        stripe_payout_id=stripe_payout_id,
        amount=amount,
        status=target,
        destination=destination,
        failure_code=failure_code,
        failure_message=failure_message,
    )


def mark_paid(cur, *, stripe_payout_id: str, amount: int, destination: Optional[str], account: Optional[str]):
    row = _transition_by_payout_id(
        cur,
        PayoutStatus.PAID,
        stripe_payout_id=stripe_payout_id,
        amount=amount,
        destination=destination,
        account=account,
    )
    if not row:
        json_log("info", "payouts.paid.no_transition", stripe_payout_id=stripe_payout_id)
        return None
    json_log("info", "payouts.paid", payout_id=row["id"], stripe_payout_id=stripe_payout_id, amount=row["amount"])
    return row


def mark_failed(
    cur,
    *,
    stripe_payout_id: str,
    amount: int,
    destination: Optional[str],
    account: Optional[str],
    failure_code: Optional[str],
    failure_message: Optional[str],
):
    row = _transition_by_payout_id(
        cur,
        PayoutStatus.FAILED,
        stripe_payout_id=stripe_payout_id,
        amount=amount,
        destination=destination,
        account=account,
        failure_code=failure_code,
        failure_message=failure_message,
    )
    if not row:
        json_log("info", "payouts.failed.no_transition", stripe_payout_id=stripe_payout_id)
        return None
    write_audit(
        cur,
        organization_id=row["organization_id"],
        action="connect_payout.failed",
        entity_type="payout",
        entity_id=stripe_payout_id,
        details={"failure_code": failure_code, "failure_message": failure_message, "amount": row["amount"]},
    )
    json_log(
        "error",
        "payouts.failed",
        payout_id=row["id"],
        stripe_payout_id=stripe_payout_id,
        failure_code=failure_code,
        failure_message=failure_message,
    )
    return row


def mark_transfer_created(cur, *, stripe_transfer_id: str) -> Optional[dict[str, Any]]:
    cur.execute(
        f"""
        UPDATE payouts
        SET status = 'processing', updated_at = now()
        WHERE stripe_transfer_id = %s
          AND status::text = ANY(%s)
        RETURNING {_RETURNING}
        """,
        (stripe_transfer_id, _sources(PayoutStatus.PROCESSING)),
    )
    row = cur.fetchone()
    if not row:
        json_log("info", "payouts.transfer.no_transition", stripe_transfer_id=stripe_transfer_id)
        return None
    json_log("info", "payouts.transfer.processing", payout_id=row["id"], stripe_transfer_id=stripe_transfer_id)
    return row


def reserve_transfer(
    cur,
    *,
    organization_id: str,
    payout_type: str,
    amount: int,
    destination: str,
    idempotency_key: str,
    source_type: str,
    source_id: str,
    user_id: Optional[str] = None,
    description: Optional[str] = None,
) -> dict[str, Any]:
    """
    Insert-or-fetch the pending payout row for an internal transfer. The row
    exists before money moves, so a retried job finds it again.
    """
    cur.execute(
        f"""
        INSERT INTO payouts
          (id, organization_id, user_id, type, amount, status, destination, idempotency_key,
           source_type, source_id, description)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, 'pending', %s, %s, %s, %s, %s)
        ON CONFLICT (idempotency_key) DO NOTHING
        RETURNING {_RETURNING}
        """,
        (organization_id, user_id, payout_type, amount, destination, idempotency_key, source_type, source_id, description),
    )
    row = cur.fetchone()
    if row:
        return row
    cur.execute(f"SELECT {_RETURNING} FROM payouts WHERE idempotency_key = %s", (idempotency_key,))
    return cur.fetchone()


def attach_transfer(cur, payout_id, stripe_transfer_id: str) -> Optional[dict[str, Any]]:
    cur.execute(
        f"""
        UPDATE payouts
        SET stripe_transfer_id = COALESCE(stripe_transfer_id, %s),
            status = CASE WHEN status = 'pending' THEN 'processing'::payout_status ELSE status END,
            updated_at = now()
        WHERE id = %s
        RETURNING {_RETURNING}
        """,
        (stripe_transfer_id, payout_id),
    )
    return cur.fetchone()
