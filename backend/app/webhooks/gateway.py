"""
Webhook gateway: verify, dedupe, dispatch.

Every handled event runs inside one transaction together with its dedupe
marker in `processed_webhook_events`. If the handler raises, the marker rolls
back with everything else and the processor's redelivery gets a clean retry.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError

from .. import account_sync, orders, payouts
from ..jobs import QueueName
from ..logs import json_log
from ..notifications import owner_email
from .events import (
    EVENT_MODELS,
    ChargeObject,
    EventEnvelope,
    EventKind,
    PaymentIntentObject,
    PayoutObject,
    TransferObject,
)
from .verification import DEFAULT_TOLERANCE_SECONDS, verify_signature

Handler = Callable[[Any, Any, Any, EventEnvelope], Any]


def _on_intent_processing(cur, jobs, obj: PaymentIntentObject, env: EventEnvelope):
    return orders.mark_processing(cur, payment_intent_id=obj.id)


def _on_intent_succeeded(cur, jobs, obj: PaymentIntentObject, env: EventEnvelope):
    return orders.mark_succeeded(cur, jobs, payment_intent_id=obj.id, charge_id=obj.charge_id)


def _on_intent_failed(cur, jobs, obj: PaymentIntentObject, env: EventEnvelope):
    return orders.mark_failed(cur, payment_intent_id=obj.id, failure_message=obj.failure_message)


def _on_charge_refunded(cur, jobs, obj: ChargeObject, env: EventEnvelope):
    return orders.apply_refund(cur, jobs, charge_id=obj.id, amount_refunded=obj.amount_refunded)


def _on_account_updated(cur, jobs, obj: account_sync.AccountSnapshot, env: EventEnvelope):
    return account_sync.apply_account_event(cur, obj, env.account)


def _on_payout_created(cur, jobs, obj: PayoutObject, env: EventEnvelope):
    return payouts.record_payout_created(
        cur,
        stripe_payout_id=obj.id,
        amount=obj.amount,
        destination=obj.destination_id,
        account=env.account,
        source_transfer_id=obj.source_transaction,
    )


def _notify_owner(cur, jobs, row, kind: str, data: dict[str, Any]) -> None:
    to = owner_email(cur, row["organization_id"])
    if not to:
        return
    jobs.enqueue(
        QueueName.EMAIL_NOTIFICATIONS,
        {"type": kind, "to": to, "data": data},
        idempotency_key=f"{kind}:{row['id']}",
        cur=cur,
    )


def _on_payout_paid(cur, jobs, obj: PayoutObject, env: EventEnvelope):
    row = payouts.mark_paid(
        cur,
        stripe_payout_id=obj.id,
        amount=obj.amount,
        destination=obj.destination_id,
        account=env.account,
    )
    if not row:
        return None
    account_sync.refresh_payout_health(cur, str(row["organization_id"]))
    if row["type"] == "connect_payout":
        _notify_owner(cur, jobs, row, "payout_confirmation", {"payout_id": str(row["id"]), "amount": row["amount"]})
    return row


def _on_payout_failed(cur, jobs, obj: PayoutObject, env: EventEnvelope):
    row = payouts.mark_failed(
        cur,
        stripe_payout_id=obj.id,
        amount=obj.amount,
        destination=obj.destination_id,
        account=env.account,
        failure_code=obj.failure_code,
        failure_message=obj.failure_message,
    )
    if not row:
        return None
    account_sync.refresh_payout_health(cur, str(row["organization_id"]))
    _notify_owner(
        cur,
        jobs,
        row,
        "payout_failed",
        {
            "payout_id": str(row["id"]),
            "amount": row["amount"],
            "failure_code": obj.failure_code,
            "failure_message": obj.failure_message,
        },
    )
    return row


def _on_transfer_created(cur, jobs, obj: TransferObject, env: EventEnvelope):
    return payouts.mark_transfer_created(cur, stripe_transfer_id=obj.id)


_HANDLERS: dict[EventKind, Handler] = {
    EventKind.PAYMENT_INTENT_PROCESSING: _on_intent_processing,
    EventKind.PAYMENT_INTENT_SUCCEEDED: _on_intent_succeeded,
    EventKind.PAYMENT_INTENT_FAILED: _on_intent_failed,
    EventKind.CHARGE_REFUNDED: _on_charge_refunded,
    EventKind.ACCOUNT_UPDATED: _on_account_updated,
    EventKind.PAYOUT_CREATED: _on_payout_created,
    EventKind.PAYOUT_PAID: _on_payout_paid,
    EventKind.PAYOUT_FAILED: _on_payout_failed,
    EventKind.TRANSFER_CREATED: _on_transfer_created,
}

DISPATCH: dict[EventKind, tuple[type[BaseModel], Handler]] = {
    kind: (EVENT_MODELS[kind], handler) for kind, handler in _HANDLERS.items()
}


_MARK_PROCESSED_SQL = """
    INSERT INTO processed_webhook_events (event_id, event_type, account, source)
    VALUES (%s, %s, %s, %s)
    ON CONFLICT (event_id) DO NOTHING
    RETURNING event_id
"""


@dataclass(frozen=True)
class WebhookResult:
    status: str  # processed | duplicate | ignored | invalid
    event_id: Optional[str] = None
    event_type: Optional[str] = None


class WebhookGateway:
    def __init__(
        self,
        db,
        jobs,
        *,
        secret: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        source: str = "platform",
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.jobs = jobs
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.source = source
        self._clock = clock

    def handle(self, body: bytes, signature: Optional[str]) -> WebhookResult:
        # Raises SignatureVerificationError before anything is parsed.
        verify_signature(body, signature, self.secret, tolerance_seconds=self.tolerance_seconds, now=self._clock())

        try:
            env = EventEnvelope.model_validate_json(body)
        except ValidationError as ex:
            json_log("error", "webhook.invalid_envelope", source=self.source, error=str(ex))
            return WebhookResult(status="invalid")

        json_log("info", "webhook.received", source=self.source, event_id=env.id, event_type=env.type, account=env.account)

        kind = EventKind.parse(env.type)
        if kind is None:
            json_log("info", "webhook.unhandled", source=self.source, event_id=env.id, event_type=env.type)
            return WebhookResult(status="ignored", event_id=env.id, event_type=env.type)

        model, handler = DISPATCH[kind]
        try:
            obj = model.model_validate(env.data.object)
        except ValidationError as ex:
            # Redelivering the same payload cannot fix it.
            json_log(
                "error",
                "webhook.invalid_payload",
                source=self.source,
                event_id=env.id,
                event_type=env.type,
                error=str(ex),
            )
            return WebhookResult(status="invalid", event_id=env.id, event_type=env.type)

        with self.db.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(_MARK_PROCESSED_SQL, (env.id, env.type, env.account, self.source))
                    if not cur.fetchone():
                        json_log("info", "webhook.duplicate", source=self.source, event_id=env.id, event_type=env.type)
                        return WebhookResult(status="duplicate", event_id=env.id, event_type=env.type)
                    handler(cur, self.jobs, obj, env)

        json_log("info", "webhook.processed", source=self.source, event_id=env.id, event_type=env.type)
        return WebhookResult(status="processed", event_id=env.id, event_type=env.type)
