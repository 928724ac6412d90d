"""
Handlers for the async job queues.

Each handler receives the validated payload model. Raising means "retry later"
(the queue applies the retry policy and dead-letters when attempts run out);
returning means done.
"""
from __future__ import annotations

from typing import Any, Callable

from backend.app import payouts
from backend.app.jobs import NotificationJob, PayoutJob, QueueName, RealtimeJob
from backend.app.logs import json_log


def make_email_handler(sink) -> Callable[[NotificationJob], None]:
    def _handle(job: NotificationJob) -> None:
        sink.send(job.type, job.to, job.data)

    return _handle


def make_realtime_handler(publisher) -> Callable[[RealtimeJob], None]:
    def _handle(job: RealtimeJob) -> None:
        publisher.publish(job.room, job.event, job.data)

    return _handle


def _recipient_user_id(cur, job: PayoutJob):
    if job.source_type != "tip_out":
        return None
    cur.execute("SELECT user_id FROM tip_pool_members WHERE id = %s", (job.source_id,))
    row = cur.fetchone()
    return row["user_id"] if row else None


def process_payout(db, processor, job: PayoutJob) -> Any:
    """
    Move money for one payout job, at most once.

    1. reserve the payout row by idempotency key (insert or fetch);
    2. create the transfer with the same idempotency key, so a retry after a
       crash returns the original transfer instead of a new one;
    3. attach the transfer id to the row.
    """
    if job.amount <= 0:
        json_log("info", "payouts.job.skipped", reason="zero_amount", idempotency_key=job.idempotency_key)
        return None
    if not job.recipient_ref:
        json_log("warning", "payouts.job.skipped", reason="missing_destination", idempotency_key=job.idempotency_key)
        return None

    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                row = payouts.reserve_transfer(
                    cur,
                    organization_id=job.organization_id,
                    payout_type=job.source_type,
                    amount=job.amount,
                    destination=job.recipient_ref,
                    idempotency_key=job.idempotency_key,
                    source_type=job.source_type,
                    source_id=job.source_id,
                    user_id=_recipient_user_id(cur, job),
                    description=f"{job.source_type} {job.source_id}",
                )
    if row.get("stripe_transfer_id"):
        json_log("info", "payouts.job.already_transferred", payout_id=row["id"], idempotency_key=job.idempotency_key)
        return row

    metadata = {"source_type": job.source_type, "source_id": job.source_id, "payout_id": str(row["id"])}
    if job.order_id:
        metadata["order_id"] = job.order_id
    transfer = processor.create_transfer(
        amount=job.amount,
        destination=job.recipient_ref,
        idempotency_key=job.idempotency_key,
        metadata=metadata,
    )

    with db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                updated = payouts.attach_transfer(cur, row["id"], transfer["id"])
    json_log(
        "info",
        "payouts.job.transferred",
        payout_id=row["id"],
        stripe_transfer_id=transfer["id"],
        amount=job.amount,
        source_type=job.source_type,
    )
    return updated


def make_payout_handler(db, processor) -> Callable[[PayoutJob], Any]:
    def _handle(job: PayoutJob) -> Any:
        return process_payout(db, processor, job)

    return _handle


def build_handlers(services) -> dict[str, Callable]:
    return {
        QueueName.EMAIL_NOTIFICATIONS.value: make_email_handler(services.notifications),
        QueueName.REALTIME_EVENTS.value: make_realtime_handler(services.realtime),
        QueueName.PAYOUT_PROCESSING.value: make_payout_handler(services.db, services.processor),
    }
