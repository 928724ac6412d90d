"""
Order payment state machine.

Processor events are applied with one conditional UPDATE each: the WHERE
clause only matches rows whose current status is an allowed source for the
target status. A zero-row result means "no transition" (duplicate, late or
out-of-order delivery) and produces no side effects.

    pending -> processing -> completed | failed
    failed -> completed
    completed -> partially_refunded -> partially_refunded (larger) | refunded
    completed -> refunded
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from .distribution import compute_revenue_split
from .jobs import QueueName
from .logs import json_log
from .splits import active_splits_for_catalog


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


ALLOWED_SOURCES: dict[OrderStatus, tuple[OrderStatus, ...]] = {
    OrderStatus.PROCESSING: (OrderStatus.PENDING,),
    OrderStatus.COMPLETED: (OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.FAILED),
    OrderStatus.FAILED: (OrderStatus.PENDING, OrderStatus.PROCESSING),
    # Refunds additionally require a strictly larger refunded amount when the
    # order is already partially refunded (see _APPLY_REFUND_SQL).
    OrderStatus.PARTIALLY_REFUNDED: (OrderStatus.COMPLETED, OrderStatus.PARTIALLY_REFUNDED),
    OrderStatus.REFUNDED: (OrderStatus.COMPLETED, OrderStatus.PARTIALLY_REFUNDED),
}


def _sources(target: OrderStatus) -> list[str]:
    return [s.value for s in ALLOWED_SOURCES[target]]


_RETURNING = """
    id, organization_id, catalog_id, status, subtotal, tax_amount, tip_amount, total_amount,
    amount_refunded, customer_email, stripe_payment_intent_id, stripe_charge_id
"""

_MARK_PROCESSING_SQL = f"""
    UPDATE orders
    SET status = 'processing',
        updated_at = now()
    WHERE stripe_payment_intent_id = %s
      AND status::text = ANY(%s)
    RETURNING {_RETURNING}
"""

_MARK_SUCCEEDED_SQL = f"""
    UPDATE orders
    SET status = 'completed',
        stripe_charge_id = COALESCE(stripe_charge_id, %s),
        failure_message = NULL,
        completed_at = COALESCE(completed_at, now()),
        updated_at = now()
    WHERE stripe_payment_intent_id = %s
      AND status::text = ANY(%s)
    RETURNING {_RETURNING}
"""

_MARK_FAILED_SQL = f"""
    UPDATE orders
    SET status = 'failed',
        failure_message = %s,
        updated_at = now()
    WHERE stripe_payment_intent_id = %s
      AND status::text = ANY(%s)
    RETURNING {_RETURNING}
"""

_APPLY_REFUND_SQL = f"""
    UPDATE orders
    SET amount_refunded = LEAST(%s, total_amount),
        status = (CASE WHEN %s >= total_amount THEN 'refunded' ELSE 'partially_refunded' END)::order_status,
        updated_at = now()
    WHERE stripe_charge_id = %s
      AND (
        status = 'completed'
        OR (status = 'partially_refunded' AND amount_refunded < %s)
      )
    RETURNING {_RETURNING}
"""


def _no_transition(event: str, **fields) -> None:
    json_log("info", f"orders.{event}.no_transition", **fields)


def mark_processing(cur, *, payment_intent_id: str) -> Optional[dict[str, Any]]:
    cur.execute(_MARK_PROCESSING_SQL, (payment_intent_id, _sources(OrderStatus.PROCESSING)))
    row = cur.fetchone()
    if not row:
        _no_transition("processing", payment_intent_id=payment_intent_id)
        return None
    json_log("info", "orders.processing", order_id=row["id"], payment_intent_id=payment_intent_id)
    return row


def mark_succeeded(cur, jobs, *, payment_intent_id: str, charge_id: Optional[str]) -> Optional[dict[str, Any]]:
    cur.execute(_MARK_SUCCEEDED_SQL, (charge_id, payment_intent_id, _sources(OrderStatus.COMPLETED)))
    row = cur.fetchone()
    if not row:
        _no_transition("completed", payment_intent_id=payment_intent_id)
        return None
    json_log(
        "info",
        "orders.completed",
        order_id=row["id"],
        payment_intent_id=payment_intent_id,
        total_amount=row["total_amount"],
    )
    enqueue_completion_effects(cur, jobs, row)
    return row


def mark_failed(cur, *, payment_intent_id: str, failure_message: Optional[str]) -> Optional[dict[str, Any]]:
    cur.execute(_MARK_FAILED_SQL, (failure_message, payment_intent_id, _sources(OrderStatus.FAILED)))
    row = cur.fetchone()
    if not row:
        _no_transition("failed", payment_intent_id=payment_intent_id)
        return None
    json_log("warning", "orders.failed", order_id=row["id"], payment_intent_id=payment_intent_id, error=failure_message)
    return row


def apply_refund(cur, jobs, *, charge_id: str, amount_refunded: int) -> Optional[dict[str, Any]]:
    amount = int(amount_refunded or 0)
    if amount <= 0:
        _no_transition("refund", charge_id=charge_id, amount_refunded=amount)
        return None
    cur.execute(_APPLY_REFUND_SQL, (amount, amount, charge_id, amount))
    row = cur.fetchone()
    if not row:
        _no_transition("refund", charge_id=charge_id, amount_refunded=amount)
        return None
    json_log(
        "info",
        "orders.refunded",
        order_id=row["id"],
        charge_id=charge_id,
        status=row["status"],
        amount_refunded=row["amount_refunded"],
        total_amount=row["total_amount"],
    )
    order_id = str(row["id"])
    jobs.enqueue(
        QueueName.REALTIME_EVENTS,
        {
            "room": f"org:{row['organization_id']}",
            "event": "order_refunded",
            "data": {
                "order_id": order_id,
                "status": row["status"],
                "amount_refunded": row["amount_refunded"],
                "total_amount": row["total_amount"],
            },
        },
        idempotency_key=f"order_refunded:{order_id}:{row['amount_refunded']}",
        cur=cur,
    )
    return row


def enqueue_completion_effects(cur, jobs, order: dict[str, Any]) -> None:
    """
    Follow-up work for a newly completed order. Every job carries an
    idempotency key derived from the order so a replayed transition cannot
    enqueue twice.
    """
    order_id = str(order["id"])
    org_id = str(order["organization_id"])

    jobs.enqueue(
        QueueName.REALTIME_EVENTS,
        {
            "room": f"org:{org_id}",
            "event": "payment_received",
            "data": {
                "order_id": order_id,
                "total_amount": order["total_amount"],
                "tip_amount": order.get("tip_amount") or 0,
            },
        },
        idempotency_key=f"payment_received:{order_id}",
        cur=cur,
    )

    email = (order.get("customer_email") or "").strip()
    if email:
        jobs.enqueue(
            QueueName.EMAIL_NOTIFICATIONS,
            {
                "type": "order_confirmation",
                "to": email,
                "data": {
                    "order_id": order_id,
                    "subtotal": order.get("subtotal") or 0,
                    "tax_amount": order.get("tax_amount") or 0,
                    "tip_amount": order.get("tip_amount") or 0,
                    "total_amount": order["total_amount"],
                },
            },
            idempotency_key=f"order_confirmation:{order_id}",
            cur=cur,
        )

    if not order.get("catalog_id"):
        return
    splits = active_splits_for_catalog(cur, order["catalog_id"])
    if not splits:
        return
    # Amounts come from the full active split list so capping matches the report.
    result = compute_revenue_split(
        int(order.get("subtotal") or 0),
        [(s["id"], s["percentage"]) for s in splits],
    )
    destinations = {str(s["id"]): s.get("destination_account_id") for s in splits}
    for share in result.shares:
        split_id = str(share.split_id)
        dest = destinations.get(split_id)
        if not dest or share.amount <= 0:
            continue
        key = f"revenue_split:{order_id}:{split_id}"
        jobs.enqueue(
            QueueName.PAYOUT_PROCESSING,
            {
                "source_type": "revenue_split",
                "source_id": split_id,
                "amount": share.amount,
                "recipient_ref": dest,
                "organization_id": org_id,
                "order_id": order_id,
                "idempotency_key": key,
            },
            idempotency_key=key,
            cur=cur,
        )
