from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from .. import splits
from ..deps import Principal, get_principal, get_services
from ..validation import ConnectedAccountId, Notes, Percentage, RecipientName, RecipientType

router = APIRouter(tags=["splits"])


class SplitIn(BaseModel):
    recipient_name: RecipientName
    recipient_type: RecipientType = "other"
    percentage: Percentage
    destination_account_id: Optional[ConnectedAccountId] = None
    notes: Optional[Notes] = None


class SplitUpdate(BaseModel):
    recipient_name: Optional[RecipientName] = None
    recipient_type: Optional[RecipientType] = None
    percentage: Optional[Percentage] = None
    destination_account_id: Optional[ConnectedAccountId] = None
    notes: Optional[Notes] = None
    is_active: Optional[bool] = None


@router.get("/catalogs/{catalog_id}/splits")
def list_catalog_splits(catalog_id: str, principal: Principal = Depends(get_principal), services=Depends(get_services)):
    with services.db.connection() as conn:
        with conn.cursor() as cur:
            rows = splits.list_splits(cur, catalog_id, principal.organization_id)
            total = splits.total_active_percentage(cur, catalog_id, principal.organization_id)
            return {"splits": rows, "total_percentage": total}


@router.post("/catalogs/{catalog_id}/splits")
def create_catalog_split(
    catalog_id: str,
    data: SplitIn,
    principal: Principal = Depends(get_principal),
    services=Depends(get_services),
):
    with services.db.connection() as conn:
        with conn.cursor() as cur:
            return splits.create_split(
                cur,
                catalog_id=catalog_id,
                organization_id=principal.organization_id,
                recipient_name=data.recipient_name,
                recipient_type=data.recipient_type,
                percentage=data.percentage,
                destination_account_id=data.destination_account_id,
                notes=data.notes,
            )


@router.get("/catalogs/{catalog_id}/splits/total")
def catalog_split_total(catalog_id: str, principal: Principal = Depends(get_principal), services=Depends(get_services)):
    with services.db.connection() as conn:
        with conn.cursor() as cur:
            return {"total_percentage": splits.total_active_percentage(cur, catalog_id, principal.organization_id)}


@router.get("/catalogs/{catalog_id}/splits/report")
def catalog_split_report(
    catalog_id: str,
    start_date: date,
    end_date: date,
    principal: Principal = Depends(get_principal),
    services=Depends(get_services),
):
    with services.db.connection() as conn:
        with conn.cursor() as cur:
            return splits.split_report(cur, catalog_id, principal.organization_id, start_date, end_date)


@router.patch("/splits/{split_id}")
def update_split(
    split_id: str,
    data: SplitUpdate,
    principal: Principal = Depends(get_principal),
    services=Depends(get_services),
):
    with services.db.connection() as conn:
        with conn.cursor() as cur:
            return splits.update_split(cur, split_id, principal.organization_id, data.model_dump(exclude_unset=True))


@router.delete("/splits/{split_id}")
def delete_split(split_id: str, principal: Principal = Depends(get_principal), services=Depends(get_services)):
    with services.db.connection() as conn:
        with conn.cursor() as cur:
            splits.delete_split(cur, split_id, principal.organization_id)
            return {"ok": True}
