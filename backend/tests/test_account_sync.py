from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from backend.app import account_sync
from backend.app.account_sync import (
    AccountSnapshot,
    AccountSyncError,
    AccountSyncService,
    PayoutHealth,
    derive_payout_health,
    needs_refresh,
    status_view,
)
from backend.app.processor import ProcessorError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _DummyCursor:
    def __init__(self, rows=None):
        self._rows = list(rows or [])
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None


class _DummyConn:
    def __init__(self, cur):
        self._cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    @contextmanager
    def transaction(self):
        yield

    def cursor(self):
        return self._cur


class _DummyDb:
    def __init__(self, cur):
        self.cur = cur

    def connection(self):
        return _DummyConn(self.cur)


class _Processor:
    def __init__(self, account=None, error=None):
        self.account = account
        self.error = error
        self.retrieved = []
        self.links = []
        self.created = []

    def retrieve_account(self, account_id):
        self.retrieved.append(account_id)
        if self.error:
            raise self.error
        return self.account

    def create_account_link(self, account_id, *, refresh_url, return_url, link_type):
        self.links.append((account_id, link_type))
        return {"url": f"https://connect.example/{account_id}/{link_type}"}

    def create_account(self, *, country, email, business_type, metadata):
        self.created.append((email, metadata))
        return self.account


def _cached(**kw):
    row = {
        "organization_id": "org-1",
        "stripe_account_id": "acct_1",
        "charges_enabled": False,
        "payouts_enabled": False,
        "details_submitted": True,
        "requirements_currently_due": ["external_account"],
        "requirements_past_due": [],
        "onboarding_state": "incomplete",
        "pending_stale_sync": False,
        "last_synced_at": NOW - timedelta(seconds=30),
    }
    row.update(kw)
    return row


def test_payout_health_undeliverable_only_for_current_bank_account():
    failed = {"status": "failed", "destination": "ba_1", "failure_code": "account_closed", "failure_message": "closed"}
    assert derive_payout_health(failed, "ba_1", True) == (PayoutHealth.UNDELIVERABLE, "account_closed", "closed")
    # The merchant replaced the failing bank account.
    assert derive_payout_health(failed, "ba_2", True) == (PayoutHealth.ACTIVE, None, None)
    assert derive_payout_health(failed, "ba_2", False) == (PayoutHealth.RESTRICTED, None, None)
    assert derive_payout_health({"status": "paid", "destination": "ba_1"}, "ba_1", True)[0] == PayoutHealth.ACTIVE
    assert derive_payout_health(None, None, True)[0] == PayoutHealth.ACTIVE


def test_needs_refresh():
    assert needs_refresh(_cached(), NOW, 300) is False
    assert needs_refresh(_cached(last_synced_at=NOW - timedelta(seconds=301)), NOW, 300) is True
    assert needs_refresh(_cached(last_synced_at=None), NOW, 300) is True
    assert needs_refresh(_cached(pending_stale_sync=True), NOW, 300) is True


def test_status_view_without_account():
    view = status_view(None)
    assert view["has_connected_account"] is False
    assert view["onboarding_state"] == "not_started"


def test_status_serves_fresh_cache_without_pulling():
    processor = _Processor()
    svc = AccountSyncService(_DummyDb(_DummyCursor([_cached()])), processor, ttl_seconds=300, clock=lambda: NOW)

    view = svc.status("org-1")

    assert view["onboarding_state"] == "incomplete"
    assert view["onboarding_complete"] is False
    assert processor.retrieved == []


def test_status_pulls_when_stale(monkeypatch):
    synced = _cached(onboarding_state="active", charges_enabled=True, payouts_enabled=True, requirements_currently_due=[])
    calls = []

    def _sync(cur, snapshot, organization_id):
        calls.append((snapshot.id, organization_id))
        return synced

    monkeypatch.setattr(account_sync, "sync_account", _sync)
    processor = _Processor(account={"id": "acct_1", "details_submitted": True, "charges_enabled": True, "payouts_enabled": True})
    cur = _DummyCursor([_cached(pending_stale_sync=True)])
    svc = AccountSyncService(_DummyDb(cur), processor, clock=lambda: NOW)

    view = svc.status("org-1")

    assert processor.retrieved == ["acct_1"]
    assert calls == [("acct_1", "org-1")]
    assert view["onboarding_complete"] is True


def test_status_falls_back_to_cache_when_pull_fails():
    processor = _Processor(error=ProcessorError("retrieve_account", "timeout"))
    stale = _cached(last_synced_at=NOW - timedelta(hours=2))
    svc = AccountSyncService(_DummyDb(_DummyCursor([stale])), processor, ttl_seconds=300, clock=lambda: NOW)

    view = svc.status("org-1")

    assert processor.retrieved == ["acct_1"]
    assert view["has_connected_account"] is True
    assert view["onboarding_state"] == "incomplete"


def test_refresh_without_account_is_404():
    svc = AccountSyncService(_DummyDb(_DummyCursor([])), _Processor(), clock=lambda: NOW)
    with pytest.raises(AccountSyncError) as exc_info:
        svc.refresh("org-1")
    assert exc_info.value.status_code == 404


def test_onboarding_link_marks_cache_stale():
    cur = _DummyCursor([_cached(onboarding_state="active")])
    processor = _Processor()
    svc = AccountSyncService(_DummyDb(cur), processor, dashboard_url="https://pos.example", clock=lambda: NOW)

    out = svc.onboarding_link("org-1")

    assert out["link_type"] == "account_update"
    assert processor.links == [("acct_1", "account_update")]
    assert any("pending_stale_sync = true" in sql for sql, _ in cur.executed)


def _snapshot(**kw):
    data = {
        "id": "acct_1",
        "details_submitted": True,
        "charges_enabled": True,
        "payouts_enabled": True,
        "requirements": {"currently_due": []},
        "external_accounts": {"data": [{"id": "ba_2", "object": "bank_account", "last4": "6789", "bank_name": "Test Bank"}]},
    }
    data.update(kw)
    return AccountSnapshot.model_validate(data)


def test_sync_account_stores_state_and_clears_stale_failure():
    loaded = _cached(onboarding_state="active", payout_status="active")
    cur = _DummyCursor(
        [
            {"external_account_id": "ba_2", "payouts_enabled": True},
            # Last payout failed against the bank account that was since replaced.
            {"status": "failed", "destination": "ba_1", "failure_code": "account_closed", "failure_message": "closed"},
            loaded,
        ]
    )

    row = account_sync.sync_account(cur, _snapshot(), "org-1")

    assert row is loaded
    upsert_sql, upsert_params = cur.executed[0]
    assert "INSERT INTO merchant_accounts" in upsert_sql
    assert "pending_stale_sync = false" in upsert_sql
    assert upsert_params[10] == "active"
    assert upsert_params[15:19] == ("ba_2", "6789", "Test Bank", "bank_account")
    assert upsert_params[-1] is True
    health_sql, health_params = cur.executed[3]
    assert "SET payout_status" in health_sql
    assert health_params == ("active", None, None, "org-1")


def test_sync_account_marks_current_bank_failure_undeliverable():
    cur = _DummyCursor(
        [
            {"external_account_id": "ba_2", "payouts_enabled": True},
            {"status": "failed", "destination": "ba_2", "failure_code": "no_account", "failure_message": "no such account"},
            _cached(),
        ]
    )
    account_sync.sync_account(cur, _snapshot(), "org-1")
    assert cur.executed[3][1] == ("undeliverable", "no_account", "no such account", "org-1")


def test_account_event_syncs_and_audits():
    loaded = _cached(onboarding_state="pending_verification")
    cur = _DummyCursor(
        [
            {"organization_id": "org-1"},
            {"external_account_id": None, "payouts_enabled": False},
            None,
            loaded,
        ]
    )

    row = account_sync.apply_account_event(cur, _snapshot(payouts_enabled=False, external_accounts=None), "acct_1")

    assert row is loaded
    assert cur.executed[0][1] == ("acct_1",)
    assert cur.executed[4][1] == ("restricted", None, None, "org-1")
    audit_sql, audit_params = cur.executed[-1]
    assert "INSERT INTO audit_logs" in audit_sql
    assert audit_params[2] == "connect_account.updated"
    assert '"onboarding_state": "pending_verification"' in audit_params[5]


def test_account_event_for_unknown_account_is_dropped():
    cur = _DummyCursor([])
    assert account_sync.apply_account_event(cur, _snapshot(), "acct_unknown") is None
    assert len(cur.executed) == 1


def test_create_account_syncs_new_account_and_returns_link():
    cur = _DummyCursor(
        [
            None,
            {"email": "owner@example.com"},
            {"external_account_id": None, "payouts_enabled": False},
            None,
            _cached(stripe_account_id="acct_new", onboarding_state="not_started"),
        ]
    )
    processor = _Processor(account={"id": "acct_new", "type": "express"})
    svc = AccountSyncService(_DummyDb(cur), processor, dashboard_url="https://pos.example", clock=lambda: NOW)

    out = svc.create_account(organization_id="org-1", user_id="u1")

    assert out == {"account_id": "acct_new", "onboarding_url": "https://connect.example/acct_new/account_onboarding"}
    assert processor.created == [("owner@example.com", {"organization_id": "org-1", "user_id": "u1"})]
    sqls = [sql for sql, _ in cur.executed]
    assert any("INSERT INTO merchant_accounts" in sql for sql in sqls)
    assert any("INSERT INTO audit_logs" in sql for sql in sqls)
    assert "pending_stale_sync = true" in sqls[-1]


def test_create_account_reuses_existing_account():
    cur = _DummyCursor([_cached()])
    processor = _Processor()
    svc = AccountSyncService(_DummyDb(cur), processor, clock=lambda: NOW)

    out = svc.create_account(organization_id="org-1", user_id="u1")

    assert out["account_id"] == "acct_1"
    assert processor.created == []
    assert processor.links == [("acct_1", "account_onboarding")]


def test_create_account_for_unknown_user_is_404():
    svc = AccountSyncService(_DummyDb(_DummyCursor([None, None])), _Processor(), clock=lambda: NOW)
    with pytest.raises(AccountSyncError) as exc_info:
        svc.create_account(organization_id="org-1", user_id="u-missing")
    assert exc_info.value.status_code == 404
