from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..account_sync import AccountSnapshot


class EventKind(str, Enum):
    PAYMENT_INTENT_PROCESSING = "payment_intent.processing"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"
    ACCOUNT_UPDATED = "account.updated"
    PAYOUT_CREATED = "payout.created"
    PAYOUT_PAID = "payout.paid"
    PAYOUT_FAILED = "payout.failed"
    TRANSFER_CREATED = "transfer.created"

    @classmethod
    def parse(cls, raw: str) -> Optional["EventKind"]:
        try:
            return cls(raw)
        except ValueError:
            return None


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any]


class EventEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    account: Optional[str] = None
    livemode: bool = False
    created: Optional[int] = None
    data: EventData


class _Obj(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaymentError(_Obj):
    code: Optional[str] = None
    message: Optional[str] = None


class PaymentIntentObject(_Obj):
    id: str
    amount: int = 0
    amount_received: int = 0
    latest_charge: Optional[Union[str, dict[str, Any]]] = None
    last_payment_error: Optional[PaymentError] = None

    @property
    def charge_id(self) -> Optional[str]:
        if isinstance(self.latest_charge, dict):
            return self.latest_charge.get("id")
        return self.latest_charge

    @property
    def failure_message(self) -> Optional[str]:
        if not self.last_payment_error:
            return None
        return self.last_payment_error.message or self.last_payment_error.code


class ChargeObject(_Obj):
    id: str
    amount: int = 0
    amount_refunded: int = Field(default=0, ge=0)
    payment_intent: Optional[str] = None
    refunded: bool = False


class PayoutObject(_Obj):
    id: str
    amount: int = Field(default=0, ge=0)
    currency: Optional[str] = None
    destination: Optional[Union[str, dict[str, Any]]] = None
    source_transaction: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    arrival_date: Optional[int] = None

    @property
    def destination_id(self) -> Optional[str]:
        if isinstance(self.destination, dict):
            return self.destination.get("id")
        return self.destination


class TransferObject(_Obj):
    id: str
    amount: int = 0
    destination: Optional[str] = None


EVENT_MODELS: dict[EventKind, type[BaseModel]] = {
    EventKind.PAYMENT_INTENT_PROCESSING: PaymentIntentObject,
    EventKind.PAYMENT_INTENT_SUCCEEDED: PaymentIntentObject,
    EventKind.PAYMENT_INTENT_FAILED: PaymentIntentObject,
    EventKind.CHARGE_REFUNDED: ChargeObject,
    EventKind.ACCOUNT_UPDATED: AccountSnapshot,
    EventKind.PAYOUT_CREATED: PayoutObject,
    EventKind.PAYOUT_PAID: PayoutObject,
    EventKind.PAYOUT_FAILED: PayoutObject,
    EventKind.TRANSFER_CREATED: TransferObject,
}
