import json
from contextlib import contextmanager

import pytest

from backend.app.jobs import InMemoryJobQueue
from backend.app.webhooks import gateway as gateway_mod
from backend.app.webhooks.events import EventKind, PaymentIntentObject
from backend.app.webhooks.gateway import WebhookGateway
from backend.app.webhooks.verification import SignatureVerificationError, signature_header

SECRET = "whsec_test"
NOW = 1_760_000_000


class _DedupeCursor:
    """Only understands the processed-event insert; handlers are stubbed."""

    def __init__(self, db):
        self._db = db
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        assert sql is gateway_mod._MARK_PROCESSED_SQL
        event_id = params[0]
        if event_id in self._db.processed or event_id in self._db.pending:
            self._row = None
        else:
            self._db.pending.add(event_id)
            self._row = {"event_id": event_id}

    def fetchone(self):
        return self._row


class _DummyConn:
    def __init__(self, db):
        self._db = db

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    @contextmanager
    def transaction(self):
        try:
            yield
        except Exception:
            self._db.pending.clear()
            self._db.rollbacks += 1
            raise
        self._db.processed |= self._db.pending
        self._db.pending.clear()

    def cursor(self):
        return _DedupeCursor(self._db)


class _DummyDb:
    def __init__(self):
        self.processed = set()
        self.pending = set()
        self.rollbacks = 0

    def connection(self):
        return _DummyConn(self)


def _event(event_id="evt_1", event_type="payment_intent.succeeded", obj=None, account=None):
    body = {
        "id": event_id,
        "type": event_type,
        "account": account,
        "livemode": False,
        "created": NOW,
        "data": {"object": obj if obj is not None else {"id": "pi_1", "latest_charge": "ch_1"}},
    }
    return json.dumps(body).encode("utf-8")


def _signed(body):
    return signature_header(SECRET, body, NOW)


@pytest.fixture
def calls(monkeypatch):
    seen = []

    def _handler(cur, jobs, obj, env):
        seen.append((env.id, obj))

    monkeypatch.setitem(gateway_mod.DISPATCH, EventKind.PAYMENT_INTENT_SUCCEEDED, (PaymentIntentObject, _handler))
    return seen


def _gateway(db=None):
    return WebhookGateway(db or _DummyDb(), InMemoryJobQueue(), secret=SECRET, clock=lambda: NOW)


def test_valid_event_is_processed_once(calls):
    gw = _gateway()
    body = _event()

    first = gw.handle(body, _signed(body))
    second = gw.handle(body, _signed(body))

    assert first.status == "processed"
    assert second.status == "duplicate"
    assert len(calls) == 1
    event_id, obj = calls[0]
    assert event_id == "evt_1"
    assert obj.charge_id == "ch_1"


def test_bad_signature_raises_before_dispatch(calls):
    gw = _gateway()
    body = _event()
    with pytest.raises(SignatureVerificationError):
        gw.handle(body, signature_header("whsec_wrong", body, NOW))
    assert calls == []


def test_unknown_event_type_is_ignored(calls):
    gw = _gateway()
    body = _event(event_type="customer.subscription.updated", obj={"id": "sub_1"})
    result = gw.handle(body, _signed(body))
    assert result.status == "ignored"
    assert result.event_type == "customer.subscription.updated"
    assert calls == []


def test_malformed_envelope_is_invalid(calls):
    gw = _gateway()
    body = b'{"type": "payment_intent.succeeded"}'
    assert gw.handle(body, _signed(body)).status == "invalid"


def test_payload_that_fails_validation_is_invalid(calls):
    gw = _gateway()
    body = _event(obj={"amount": 100})
    result = gw.handle(body, _signed(body))
    assert result.status == "invalid"
    assert calls == []


def test_handler_failure_rolls_back_dedupe_marker(monkeypatch):
    attempts = []

    def _flaky(cur, jobs, obj, env):
        attempts.append(env.id)
        if len(attempts) == 1:
            raise RuntimeError("db went away")

    monkeypatch.setitem(gateway_mod.DISPATCH, EventKind.PAYMENT_INTENT_SUCCEEDED, (PaymentIntentObject, _flaky))
    db = _DummyDb()
    gw = _gateway(db)
    body = _event()

    with pytest.raises(RuntimeError):
        gw.handle(body, _signed(body))
    assert db.rollbacks == 1
    assert db.processed == set()

    # The redelivery is processed, not treated as a duplicate.
    assert gw.handle(body, _signed(body)).status == "processed"
    assert attempts == ["evt_1", "evt_1"]


def test_every_event_kind_has_a_handler():
    assert set(gateway_mod.DISPATCH) == set(EventKind)


class _ScriptedCursor:
    def __init__(self, script):
        self._script = list(script)
        self._rows = None
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        assert self._script, f"unexpected SQL: {sql}"
        fragment, rows = self._script.pop(0)
        assert fragment in sql, f"expected {fragment!r} in {sql}"
        self.executed.append((sql, params))
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def done(self):
        return not self._script


class _ScriptedConn:
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


class _ScriptedDb:
    def __init__(self, cur):
        self.cur = cur

    def connection(self):
        return _ScriptedConn(self.cur)


def _params_for(cur, fragment):
    return [params for sql, params in cur.executed if fragment in sql]


def test_account_updated_syncs_cache_and_audits():
    cur = _ScriptedCursor(
        [
            ("processed_webhook_events", [{"event_id": "evt_acct"}]),
            ("WHERE stripe_account_id = %s", [{"organization_id": "org-1"}]),
            ("INSERT INTO merchant_accounts", None),
            ("SELECT external_account_id", [{"external_account_id": "ba_2", "payouts_enabled": True}]),
            ("FROM payouts", [{"status": "failed", "destination": "ba_1", "failure_code": "x", "failure_message": "y"}]),
            ("SET payout_status", None),
            ("FROM merchant_accounts WHERE organization_id", [{"onboarding_state": "active"}]),
            ("INSERT INTO audit_logs", None),
        ]
    )
    gw = WebhookGateway(_ScriptedDb(cur), InMemoryJobQueue(), secret=SECRET, clock=lambda: NOW)
    body = _event(
        event_id="evt_acct",
        event_type="account.updated",
        account="acct_1",
        obj={
            "id": "acct_1",
            "details_submitted": True,
            "charges_enabled": True,
            "payouts_enabled": True,
            "requirements": {"currently_due": []},
            "external_accounts": {"data": [{"id": "ba_2", "object": "bank_account"}]},
        },
    )

    assert gw.handle(body, _signed(body)).status == "processed"
    assert cur.done()
    assert _params_for(cur, "INSERT INTO merchant_accounts")[0][10] == "active"
    # The failure was against a replaced bank account.
    assert _params_for(cur, "SET payout_status")[0] == ("active", None, None, "org-1")


def test_payout_failed_recomputes_health_and_notifies_owner():
    failed_row = {"id": "po-1", "organization_id": "org-1", "amount": 700, "type": "connect_payout"}
    cur = _ScriptedCursor(
        [
            ("processed_webhook_events", [{"event_id": "evt_po"}]),
            ("WHERE stripe_payout_id = %s", [failed_row]),
            ("INSERT INTO audit_logs", None),
            ("SELECT external_account_id", [{"external_account_id": "ba_1", "payouts_enabled": True}]),
            (
                "FROM payouts",
                [{"status": "failed", "destination": "ba_1", "failure_code": "account_closed", "failure_message": "closed"}],
            ),
            ("SET payout_status", None),
            ("FROM users", [{"email": "owner@example.com"}]),
        ]
    )
    jobs = InMemoryJobQueue()
    gw = WebhookGateway(_ScriptedDb(cur), jobs, secret=SECRET, clock=lambda: NOW)
    body = _event(
        event_id="evt_po",
        event_type="payout.failed",
        account="acct_1",
        obj={
            "id": "po_1",
            "amount": 700,
            "destination": "ba_1",
            "failure_code": "account_closed",
            "failure_message": "closed",
        },
    )

    assert gw.handle(body, _signed(body)).status == "processed"
    assert cur.done()
    assert _params_for(cur, "SET payout_status")[0] == ("undeliverable", "account_closed", "closed", "org-1")

    job = jobs.claim()
    assert job.queue == "email-notifications"
    assert job.idempotency_key == "payout_failed:po-1"
    assert job.payload["type"] == "payout_failed"
    assert job.payload["to"] == "owner@example.com"
    assert job.payload["data"]["failure_code"] == "account_closed"


def test_payout_failed_for_unknown_payout_and_account_is_a_no_op():
    cur = _ScriptedCursor(
        [
            ("processed_webhook_events", [{"event_id": "evt_po2"}]),
            ("WHERE stripe_payout_id = %s", []),
            ("WHERE stripe_account_id = %s", []),
        ]
    )
    jobs = InMemoryJobQueue()
    gw = WebhookGateway(_ScriptedDb(cur), jobs, secret=SECRET, clock=lambda: NOW)
    body = _event(event_id="evt_po2", event_type="payout.failed", account="acct_x", obj={"id": "po_x", "amount": 1})

    assert gw.handle(body, _signed(body)).status == "processed"
    assert cur.done()
    assert jobs.claim() is None
