from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Optional

from .distribution import compute_revenue_split
from .logs import json_log

RECIPIENT_TYPES = ("venue", "promoter", "partner", "other")


class SplitError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


_SPLIT_COLUMNS = """
    id, catalog_id, organization_id, recipient_name, recipient_type, percentage,
    destination_account_id, notes, is_active, created_at, updated_at
"""


def _check_percentage(pct) -> None:
    if pct is None:
        return
    p = Decimal(str(pct))
    if p < 0 or p > 100:
        raise SplitError(400, "percentage must be between 0 and 100")


def _require_catalog(cur, catalog_id: str, organization_id: str) -> dict[str, Any]:
    cur.execute(
        "SELECT id, name FROM catalogs WHERE id = %s AND organization_id = %s",
        (catalog_id, organization_id),
    )
    row = cur.fetchone()
    if not row:
        raise SplitError(404, "catalog not found")
    return row


def active_splits_for_catalog(cur, catalog_id) -> list[dict[str, Any]]:
    # Stable order: the split algorithm caps later splits first.
    cur.execute(
        """
        SELECT id, percentage, destination_account_id
        FROM revenue_splits
        WHERE catalog_id = %s AND is_active = true
        ORDER BY created_at ASC, id ASC
        """,
        (catalog_id,),
    )
    return cur.fetchall()


def list_splits(cur, catalog_id: str, organization_id: str) -> list[dict[str, Any]]:
    cur.execute(
        f"""
        SELECT {_SPLIT_COLUMNS}
        FROM revenue_splits
        WHERE catalog_id = %s AND organization_id = %s
        ORDER BY created_at ASC, id ASC
        """,
        (catalog_id, organization_id),
    )
    return cur.fetchall()


def total_active_percentage(cur, catalog_id: str, organization_id: str) -> Decimal:
    cur.execute(
        """
        SELECT COALESCE(SUM(percentage), 0) AS total
        FROM revenue_splits
        WHERE catalog_id = %s AND organization_id = %s AND is_active = true
        """,
        (catalog_id, organization_id),
    )
    row = cur.fetchone()
    return Decimal(str(row["total"] if row else 0))


def create_split(
    cur,
    *,
    catalog_id: str,
    organization_id: str,
    recipient_name: str,
    recipient_type: str,
    percentage,
    destination_account_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict[str, Any]:
    _check_percentage(percentage)
    if recipient_type not in RECIPIENT_TYPES:
        raise SplitError(400, "invalid recipient type")
    _require_catalog(cur, catalog_id, organization_id)
    cur.execute(
        f"""
        INSERT INTO revenue_splits
          (id, catalog_id, organization_id, recipient_name, recipient_type, percentage,
           destination_account_id, notes)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
        RETURNING {_SPLIT_COLUMNS}
        """,
        (catalog_id, organization_id, recipient_name, recipient_type, percentage, destination_account_id, notes),
    )
    row = cur.fetchone()
    json_log(
        "info",
        "splits.created",
        split_id=row["id"],
        catalog_id=catalog_id,
        recipient_name=recipient_name,
        percentage=percentage,
    )
    return row


_UPDATABLE = ("recipient_name", "recipient_type", "percentage", "destination_account_id", "notes", "is_active")
_CLEARABLE = ("destination_account_id", "notes")


def update_split(cur, split_id: str, organization_id: str, patch: dict[str, Any]) -> dict[str, Any]:
    fields = []
    params: list[Any] = []
    for k in _UPDATABLE:
        if k not in patch:
            continue
        if patch[k] is None and k not in _CLEARABLE:
            raise SplitError(400, f"{k} cannot be null")
        if k == "percentage":
            _check_percentage(patch[k])
        if k == "recipient_type" and patch[k] not in RECIPIENT_TYPES:
            raise SplitError(400, "invalid recipient type")
        fields.append(f"{k} = %s")
        params.append(patch[k])
    if not fields:
        cur.execute(
            f"SELECT {_SPLIT_COLUMNS} FROM revenue_splits WHERE id = %s AND organization_id = %s",
            (split_id, organization_id),
        )
    else:
        params.extend([split_id, organization_id])
        cur.execute(
            f"""
            UPDATE revenue_splits
            SET {', '.join(fields)}, updated_at = now()
            WHERE id = %s AND organization_id = %s
            RETURNING {_SPLIT_COLUMNS}
            """,
            params,
        )
    row = cur.fetchone()
    if not row:
        raise SplitError(404, "split not found")
    if fields:
        json_log("info", "splits.updated", split_id=split_id, fields=sorted(k for k in _UPDATABLE if k in patch))
    return row


def delete_split(cur, split_id: str, organization_id: str) -> None:
    cur.execute(
        "DELETE FROM revenue_splits WHERE id = %s AND organization_id = %s RETURNING id",
        (split_id, organization_id),
    )
    if not cur.fetchone():
        raise SplitError(404, "split not found")
    json_log("info", "splits.deleted", split_id=split_id)


def split_report(cur, catalog_id: str, organization_id: str, start_date: date, end_date: date) -> dict[str, Any]:
    """
    Revenue split report over completed orders created in [start_date, end_date]
    (inclusive dates). Gross sales are order subtotals, before tax and tip.
    """
    if end_date < start_date:
        raise SplitError(400, "end_date must be on or after start_date")
    catalog = _require_catalog(cur, catalog_id, organization_id)
    cur.execute(
        """
        SELECT COALESCE(SUM(subtotal), 0) AS gross_sales,
               COUNT(*) AS order_count
        FROM orders
        WHERE organization_id = %s
          AND catalog_id = %s
          AND status = 'completed'
          AND created_at >= %s::date
          AND created_at < (%s::date + interval '1 day')
        """,
        (organization_id, catalog_id, start_date, end_date),
    )
    sales = cur.fetchone() or {}
    gross = int(sales.get("gross_sales") or 0)
    order_count = int(sales.get("order_count") or 0)

    cur.execute(
        f"""
        SELECT {_SPLIT_COLUMNS}
        FROM revenue_splits
        WHERE catalog_id = %s AND organization_id = %s AND is_active = true
        ORDER BY created_at ASC, id ASC
        """,
        (catalog_id, organization_id),
    )
    splits = cur.fetchall()
    result = compute_revenue_split(gross, [(s["id"], s["percentage"]) for s in splits])
    amounts = {str(s.split_id): s.amount for s in result.shares}

    return {
        "catalog": {"id": str(catalog["id"]), "name": catalog.get("name")},
        "period": {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        "summary": {
            "gross_sales": result.gross_sales,
            "total_split_amount": result.total_split_amount,
            "your_share": result.your_share,
            "order_count": order_count,
        },
        "splits": [
            {
                "id": str(s["id"]),
                "recipient_name": s["recipient_name"],
                "recipient_type": s["recipient_type"],
                "percentage": Decimal(str(s["percentage"])),
                "amount": amounts[str(s["id"])],
            }
            for s in splits
        ],
    }
