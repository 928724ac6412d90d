from datetime import date
from decimal import Decimal

import pytest

from backend.app import splits
from backend.app.splits import SplitError


class _ScriptedCursor:
    def __init__(self, script):
        self._script = list(script)
        self._rows = None
        self.executed = []

    def execute(self, sql, params=None):
        assert self._script, f"unexpected SQL: {sql}"
        fragment, rows = self._script.pop(0)
        assert fragment in sql, f"expected {fragment!r} in {sql}"
        self.executed.append((sql, params))
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows or [])


def _split(split_id, pct, name, rtype="venue"):
    return {
        "id": split_id,
        "recipient_name": name,
        "recipient_type": rtype,
        "percentage": Decimal(str(pct)),
        "destination_account_id": None,
    }


def test_report_splits_gross_sales():
    cur = _ScriptedCursor(
        [
            ("FROM catalogs", [{"id": "cat-1", "name": "Summer Fest"}]),
            ("SUM(subtotal)", [{"gross_sales": 100000, "order_count": 12}]),
            ("FROM revenue_splits", [_split("s1", 10, "Venue"), _split("s2", 5, "Promo Co", "promoter")]),
        ]
    )

    report = splits.split_report(cur, "cat-1", "org-1", date(2026, 3, 1), date(2026, 3, 31))

    assert report["summary"] == {
        "gross_sales": 100000,
        "total_split_amount": 15000,
        "your_share": 85000,
        "order_count": 12,
    }
    assert [(s["id"], s["amount"]) for s in report["splits"]] == [("s1", 10000), ("s2", 5000)]
    assert report["period"] == {"start_date": "2026-03-01", "end_date": "2026-03-31"}
    # Only completed orders count toward gross sales.
    assert "status = 'completed'" in cur.executed[1][0]


def test_report_with_no_sales_is_all_zero():
    cur = _ScriptedCursor(
        [
            ("FROM catalogs", [{"id": "cat-1", "name": "Empty"}]),
            ("SUM(subtotal)", [{"gross_sales": 0, "order_count": 0}]),
            ("FROM revenue_splits", [_split("s1", 25, "Venue")]),
        ]
    )
    report = splits.split_report(cur, "cat-1", "org-1", date(2026, 3, 1), date(2026, 3, 1))
    assert report["summary"]["your_share"] == 0
    assert report["splits"][0]["amount"] == 0


def test_report_for_unknown_catalog_is_404():
    cur = _ScriptedCursor([("FROM catalogs", [])])
    with pytest.raises(SplitError) as exc_info:
        splits.split_report(cur, "cat-x", "org-1", date(2026, 3, 1), date(2026, 3, 2))
    assert exc_info.value.status_code == 404


def test_report_rejects_inverted_period():
    with pytest.raises(SplitError) as exc_info:
        splits.split_report(_ScriptedCursor([]), "cat-1", "org-1", date(2026, 3, 2), date(2026, 3, 1))
    assert exc_info.value.status_code == 400


@pytest.mark.parametrize("pct", [-5, 101])
def test_create_split_rejects_bad_percentage(pct):
    with pytest.raises(SplitError) as exc_info:
        splits.create_split(
            _ScriptedCursor([]),
            catalog_id="cat-1",
            organization_id="org-1",
            recipient_name="Venue",
            recipient_type="venue",
            percentage=pct,
        )
    assert exc_info.value.status_code == 400


def test_create_split_checks_catalog_then_inserts():
    cur = _ScriptedCursor(
        [
            ("FROM catalogs", [{"id": "cat-1", "name": "Summer Fest"}]),
            ("INSERT INTO revenue_splits", [_split("s1", 10, "Venue")]),
        ]
    )
    row = splits.create_split(
        cur,
        catalog_id="cat-1",
        organization_id="org-1",
        recipient_name="Venue",
        recipient_type="venue",
        percentage=Decimal("10"),
        destination_account_id="acct_venue",
    )
    assert row["id"] == "s1"
    assert cur.executed[1][1][-2] == "acct_venue"


def test_update_split_only_touches_given_fields():
    cur = _ScriptedCursor([("UPDATE revenue_splits", [_split("s1", 12, "Venue")])])
    splits.update_split(cur, "s1", "org-1", {"percentage": Decimal("12"), "ignored": True})
    sql, params = cur.executed[0]
    assert "percentage = %s" in sql
    assert "recipient_name" not in sql.split("RETURNING")[0]
    assert params == [Decimal("12"), "s1", "org-1"]


def test_update_missing_split_is_404():
    cur = _ScriptedCursor([("UPDATE revenue_splits", [])])
    with pytest.raises(SplitError) as exc_info:
        splits.update_split(cur, "s1", "org-1", {"is_active": False})
    assert exc_info.value.status_code == 404


def test_total_active_percentage():
    cur = _ScriptedCursor([("SUM(percentage)", [{"total": Decimal("15.50")}])])
    assert splits.total_active_percentage(cur, "cat-1", "org-1") == Decimal("15.50")


@pytest.mark.parametrize("field", ["percentage", "is_active", "recipient_name", "recipient_type"])
def test_update_split_rejects_null_for_required_fields(field):
    cur = _ScriptedCursor([])
    with pytest.raises(SplitError) as exc_info:
        splits.update_split(cur, "s1", "org-1", {field: None})
    assert exc_info.value.status_code == 400
    assert cur.executed == []


def test_update_split_nulls_from_request_body_are_rejected_before_sql():
    from backend.app.routers.splits import SplitUpdate

    patch = SplitUpdate.model_validate({"percentage": None, "is_active": None}).model_dump(exclude_unset=True)
    cur = _ScriptedCursor([])
    with pytest.raises(SplitError):
        splits.update_split(cur, "s1", "org-1", patch)
    assert cur.executed == []


def test_update_split_can_clear_destination_and_notes():
    cur = _ScriptedCursor([("UPDATE revenue_splits", [_split("s1", 10, "Venue")])])
    splits.update_split(cur, "s1", "org-1", {"destination_account_id": None, "notes": None})
    sql, params = cur.executed[0]
    assert "destination_account_id = %s" in sql
    assert params == [None, None, "s1", "org-1"]
