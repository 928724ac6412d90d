"""
Merchant (connected) account sync.

The processor is the system of record for a merchant's onboarding and
capabilities; `merchant_accounts` is a cache of it. Every write goes through
`sync_account`, which stores the full snapshot, derives the onboarding state,
and recomputes payout health from the latest payout.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .audit import write_audit
from .logs import json_log


class OnboardingState(str, Enum):
    NOT_STARTED = "not_started"
    INCOMPLETE = "incomplete"
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    RESTRICTED = "restricted"
    DISABLED = "disabled"


class PayoutHealth(str, Enum):
    ACTIVE = "active"
    UNDELIVERABLE = "undeliverable"
    RESTRICTED = "restricted"


class Requirements(BaseModel):
    model_config = ConfigDict(extra="ignore")

    currently_due: list[str] = Field(default_factory=list)
    eventually_due: list[str] = Field(default_factory=list)
    past_due: list[str] = Field(default_factory=list)
    disabled_reason: Optional[str] = None


class ExternalAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    object: Optional[str] = None
    last4: Optional[str] = None
    bank_name: Optional[str] = None
    brand: Optional[str] = None
    status: Optional[str] = None


class ExternalAccountList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[ExternalAccount] = Field(default_factory=list)


class AccountSnapshot(BaseModel):
    """Processor view of a connected account (only the fields we keep)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: Optional[str] = None
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    requirements: Requirements = Field(default_factory=Requirements)
    country: Optional[str] = None
    default_currency: Optional[str] = None
    business_type: Optional[str] = None
    business_profile: Optional[dict[str, Any]] = None
    company: Optional[dict[str, Any]] = None
    external_accounts: Optional[ExternalAccountList] = None

    @property
    def business_name(self) -> Optional[str]:
        return (self.business_profile or {}).get("name") or (self.company or {}).get("name")

    @property
    def primary_external_account(self) -> Optional[ExternalAccount]:
        if self.external_accounts and self.external_accounts.data:
            return self.external_accounts.data[0]
        return None


def derive_onboarding_state(account: AccountSnapshot) -> OnboardingState:
    req = account.requirements
    if not account.details_submitted:
        return OnboardingState.NOT_STARTED
    if req.disabled_reason:
        return OnboardingState.DISABLED
    if req.past_due:
        return OnboardingState.RESTRICTED
    if account.charges_enabled and account.payouts_enabled:
        return OnboardingState.PENDING_VERIFICATION if req.currently_due else OnboardingState.ACTIVE
    if req.currently_due:
        return OnboardingState.INCOMPLETE
    return OnboardingState.PENDING_VERIFICATION


def derive_payout_health(
    latest_payout: Optional[Mapping[str, Any]],
    external_account_id: Optional[str],
    payouts_enabled: bool,
) -> tuple[PayoutHealth, Optional[str], Optional[str]]:
    """
    `undeliverable` only when the most recent payout failed against the bank
    account currently on file; a failure against a replaced account no longer
    says anything about deliverability.
    """
    if (
        latest_payout
        and latest_payout.get("status") == "failed"
        and external_account_id
        and latest_payout.get("destination") == external_account_id
    ):
        return PayoutHealth.UNDELIVERABLE, latest_payout.get("failure_code"), latest_payout.get("failure_message")
    if not payouts_enabled:
        return PayoutHealth.RESTRICTED, None, None
    return PayoutHealth.ACTIVE, None, None


def needs_refresh(row: Mapping[str, Any], now: datetime, ttl_seconds: int) -> bool:
    if row.get("pending_stale_sync"):
        return True
    last = row.get("last_synced_at")
    if last is None:
        return True
    return last < now - timedelta(seconds=ttl_seconds)


_ACCOUNT_COLUMNS = """
    organization_id, stripe_account_id, account_type, charges_enabled, payouts_enabled,
    details_submitted, requirements_currently_due, requirements_eventually_due,
    requirements_past_due, requirements_disabled_reason, onboarding_state, country,
    default_currency, business_type, business_name, external_account_id,
    external_account_last4, external_account_bank_name, external_account_type,
    external_account_status, payout_status, payout_failure_code, payout_failure_message,
    pending_stale_sync, last_synced_at, onboarding_completed_at
"""


def load_account(cur, organization_id: str) -> Optional[dict[str, Any]]:
    cur.execute(
        f"SELECT {_ACCOUNT_COLUMNS} FROM merchant_accounts WHERE organization_id = %s",
        (organization_id,),
    )
    return cur.fetchone()


def organization_for_account(cur, stripe_account_id: str) -> Optional[str]:
    cur.execute(
        "SELECT organization_id FROM merchant_accounts WHERE stripe_account_id = %s",
        (stripe_account_id,),
    )
    row = cur.fetchone()
    return str(row["organization_id"]) if row else None


def sync_account(cur, snapshot: AccountSnapshot, organization_id: str) -> dict[str, Any]:
    state = derive_onboarding_state(snapshot)
    ext = snapshot.primary_external_account
    ext_bank = None
    ext_type = None
    if ext is not None:
        if ext.object == "bank_account":
            ext_bank, ext_type = ext.bank_name, "bank_account"
        elif ext.object == "card":
            ext_bank, ext_type = ext.brand, "card"
    req = snapshot.requirements

    cur.execute(
        """
        INSERT INTO merchant_accounts (
          organization_id, stripe_account_id, account_type, charges_enabled, payouts_enabled,
          details_submitted, requirements_currently_due, requirements_eventually_due,
          requirements_past_due, requirements_disabled_reason, onboarding_state, country,
          default_currency, business_type, business_name, external_account_id,
          external_account_last4, external_account_bank_name, external_account_type,
          external_account_status, onboarding_completed_at, pending_stale_sync, last_synced_at
        ) VALUES (
          %s, %s, %s, %s, %s,
          %s, %s::jsonb, %s::jsonb,
          %s::jsonb, %s, %s, %s,
          %s, %s, %s, %s,
          %s, %s, %s,
          %s, CASE WHEN %s THEN now() ELSE NULL END, false, now()
        )
        ON CONFLICT (organization_id) DO UPDATE SET
          stripe_account_id = EXCLUDED.stripe_account_id,
          account_type = EXCLUDED.account_type,
          charges_enabled = EXCLUDED.charges_enabled,
          payouts_enabled = EXCLUDED.payouts_enabled,
          details_submitted = EXCLUDED.details_submitted,
          requirements_currently_due = EXCLUDED.requirements_currently_due,
          requirements_eventually_due = EXCLUDED.requirements_eventually_due,
          requirements_past_due = EXCLUDED.requirements_past_due,
          requirements_disabled_reason = EXCLUDED.requirements_disabled_reason,
          onboarding_state = EXCLUDED.onboarding_state,
          country = EXCLUDED.country,
          default_currency = EXCLUDED.default_currency,
          business_type = EXCLUDED.business_type,
          business_name = EXCLUDED.business_name,
          external_account_id = EXCLUDED.external_account_id,
          external_account_last4 = EXCLUDED.external_account_last4,
          external_account_bank_name = EXCLUDED.external_account_bank_name,
          external_account_type = EXCLUDED.external_account_type,
          external_account_status = EXCLUDED.external_account_status,
          onboarding_completed_at = COALESCE(merchant_accounts.onboarding_completed_at, EXCLUDED.onboarding_completed_at),
          pending_stale_sync = false,
          last_synced_at = now(),
          updated_at = now()
        """,
        (
            organization_id,
            snapshot.id,
            snapshot.type or "express",
            snapshot.charges_enabled,
            snapshot.payouts_enabled,
            snapshot.details_submitted,
            json.dumps(req.currently_due),
            json.dumps(req.eventually_due),
            json.dumps(req.past_due),
            req.disabled_reason,
            state.value,
            snapshot.country or "US",
            snapshot.default_currency or "usd",
            snapshot.business_type,
            snapshot.business_name,
            ext.id if ext else None,
            ext.last4 if ext else None,
            ext_bank,
            ext_type,
            ext.status if ext else None,
            state == OnboardingState.ACTIVE,
        ),
    )
    health = refresh_payout_health(cur, organization_id)
    json_log(
        "info",
        "connect.account.synced",
        organization_id=organization_id,
        account_id=snapshot.id,
        onboarding_state=state.value,
        payout_status=health.value,
    )
    return load_account(cur, organization_id)


def refresh_payout_health(cur, organization_id: str) -> PayoutHealth:
    cur.execute(
        """
        SELECT external_account_id, payouts_enabled
        FROM merchant_accounts
        WHERE organization_id = %s
        """,
        (organization_id,),
    )
    acct = cur.fetchone()
    if not acct:
        return PayoutHealth.RESTRICTED
    cur.execute(
        """
        SELECT status, destination, failure_code, failure_message
        FROM payouts
        WHERE organization_id = %s AND type = 'connect_payout'
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (organization_id,),
    )
    latest = cur.fetchone()
    health, code, message = derive_payout_health(latest, acct.get("external_account_id"), bool(acct.get("payouts_enabled")))
    cur.execute(
        """
        UPDATE merchant_accounts
        SET payout_status = %s,
            payout_failure_code = %s,
            payout_failure_message = %s,
            updated_at = now()
        WHERE organization_id = %s
        """,
        (health.value, code, message, organization_id),
    )
    return health


def mark_pending_sync(cur, organization_id: str) -> None:
    cur.execute(
        "UPDATE merchant_accounts SET pending_stale_sync = true, updated_at = now() WHERE organization_id = %s",
        (organization_id,),
    )


def apply_account_event(cur, snapshot: AccountSnapshot, account: Optional[str]) -> Optional[dict[str, Any]]:
    """`account.updated`: the event carries the full account, so it is a sync."""
    org_id = organization_for_account(cur, account or snapshot.id)
    if not org_id:
        json_log("warning", "connect.account.unknown", account_id=account or snapshot.id)
        return None
    row = sync_account(cur, snapshot, org_id)
    write_audit(
        cur,
        organization_id=org_id,
        action="connect_account.updated",
        entity_type="merchant_account",
        entity_id=snapshot.id,
        details={
            "charges_enabled": snapshot.charges_enabled,
            "payouts_enabled": snapshot.payouts_enabled,
            "onboarding_state": row["onboarding_state"] if row else None,
        },
    )
    return row


def status_view(row: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    if not row:
        return {
            "has_connected_account": False,
            "onboarding_complete": False,
            "onboarding_state": OnboardingState.NOT_STARTED.value,
            "charges_enabled": False,
            "payouts_enabled": False,
            "details_submitted": False,
            "requirements_currently_due": [],
            "requirements_past_due": [],
            "disabled_reason": None,
            "business_name": None,
            "external_account_last4": None,
            "external_account_bank_name": None,
            "payout_status": None,
            "payout_failure_message": None,
            "last_synced_at": None,
        }
    return {
        "has_connected_account": True,
        "onboarding_complete": row["onboarding_state"] == OnboardingState.ACTIVE.value,
        "onboarding_state": row["onboarding_state"],
        "charges_enabled": bool(row["charges_enabled"]),
        "payouts_enabled": bool(row["payouts_enabled"]),
        "details_submitted": bool(row["details_submitted"]),
        "requirements_currently_due": row.get("requirements_currently_due") or [],
        "requirements_past_due": row.get("requirements_past_due") or [],
        "disabled_reason": row.get("requirements_disabled_reason"),
        "business_name": row.get("business_name"),
        "external_account_last4": row.get("external_account_last4"),
        "external_account_bank_name": row.get("external_account_bank_name"),
        "payout_status": row.get("payout_status"),
        "payout_failure_message": row.get("payout_failure_message"),
        "last_synced_at": row.get("last_synced_at"),
    }


class AccountSyncError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountSyncService:
    """Pull-side sync: reads the cache, refreshes it from the processor when stale."""

    def __init__(self, db, processor, *, ttl_seconds: int = 300, dashboard_url: str = "", clock=_utcnow):
        self.db = db
        self.processor = processor
        self.ttl_seconds = ttl_seconds
        self.dashboard_url = dashboard_url
        self._clock = clock

    def _pull(self, cur, organization_id: str, stripe_account_id: str) -> dict[str, Any]:
        snapshot = AccountSnapshot.model_validate(self.processor.retrieve_account(stripe_account_id))
        return sync_account(cur, snapshot, organization_id)

    def status(self, organization_id: str) -> dict[str, Any]:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                row = load_account(cur, organization_id)
        if not row or not needs_refresh(row, self._clock(), self.ttl_seconds):
            return status_view(row)
        try:
            with self.db.connection() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        row = self._pull(cur, organization_id, row["stripe_account_id"])
        except Exception as ex:
            # Stale data beats no data; the next read retries the pull.
            json_log(
                "warning",
                "connect.status.refresh_failed",
                organization_id=organization_id,
                account_id=row["stripe_account_id"],
                error=str(ex),
            )
        return status_view(row)

    def refresh(self, organization_id: str) -> dict[str, Any]:
        with self.db.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    row = load_account(cur, organization_id)
                    if not row:
                        raise AccountSyncError(404, "no connected account found")
                    row = self._pull(cur, organization_id, row["stripe_account_id"])
        json_log("info", "connect.status.refreshed", organization_id=organization_id, onboarding_state=row["onboarding_state"])
        return status_view(row)

    def _return_url(self) -> str:
        return f"{self.dashboard_url}/connect"

    def create_account(self, *, organization_id: str, user_id: str, country: str = "US", business_type: Optional[str] = None):
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                existing = load_account(cur, organization_id)
                if existing:
                    link = self.processor.create_account_link(
                        existing["stripe_account_id"],
                        refresh_url=self._return_url(),
                        return_url=self._return_url(),
                        link_type="account_onboarding",
                    )
                    mark_pending_sync(cur, organization_id)
                    return {"account_id": existing["stripe_account_id"], "onboarding_url": link["url"]}
                cur.execute("SELECT email FROM users WHERE id = %s", (user_id,))
                user = cur.fetchone()
                if not user:
                    raise AccountSyncError(404, "user not found")

        created = self.processor.create_account(
            country=country,
            email=user["email"],
            business_type=business_type,
            metadata={"organization_id": str(organization_id), "user_id": str(user_id)},
        )
        snapshot = AccountSnapshot.model_validate(created)
        with self.db.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    sync_account(cur, snapshot, organization_id)
                    write_audit(
                        cur,
                        organization_id=organization_id,
                        user_id=user_id,
                        action="connect_account.created",
                        entity_type="merchant_account",
                        entity_id=snapshot.id,
                    )
        link = self.processor.create_account_link(
            snapshot.id,
            refresh_url=self._return_url(),
            return_url=self._return_url(),
            link_type="account_onboarding",
        )
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                mark_pending_sync(cur, organization_id)
        json_log("info", "connect.account.created", organization_id=organization_id, account_id=snapshot.id, user_id=user_id)
        return {"account_id": snapshot.id, "onboarding_url": link["url"]}

    def onboarding_link(self, organization_id: str) -> dict[str, Any]:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                row = load_account(cur, organization_id)
                if not row:
                    raise AccountSyncError(404, "no connected account found")
                link_type = "account_update" if row["onboarding_state"] == OnboardingState.ACTIVE.value else "account_onboarding"
                link = self.processor.create_account_link(
                    row["stripe_account_id"],
                    refresh_url=self._return_url(),
                    return_url=self._return_url(),
                    link_type=link_type,
                )
                mark_pending_sync(cur, organization_id)
        json_log("info", "connect.onboarding_link.created", organization_id=organization_id, link_type=link_type)
        return {"onboarding_url": link["url"], "link_type": link_type}
