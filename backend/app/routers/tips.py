from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from .. import tips
from ..deps import Principal, get_principal, get_services
from ..validation import HoursWorked, Notes, TipPoolStatus

router = APIRouter(prefix="/tips/pools", tags=["tips"])


class TipPoolIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    start_date: date
    end_date: date
    notes: Optional[Notes] = None


class TipPoolUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    notes: Optional[Notes] = None


class TipPoolMemberIn(BaseModel):
    user_id: str
    hours_worked: HoursWorked


class TipPoolMembersIn(BaseModel):
    members: List[TipPoolMemberIn] = Field(min_length=1)


@router.get("")
def list_tip_pools(
    status: Optional[TipPoolStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_principal),
    services=Depends(get_services),
):
    with services.db.connection() as conn:
        with conn.cursor() as cur:
            return tips.list_pools(cur, principal.organization_id, status=status, limit=limit, offset=offset)


@router.post("")
def create_tip_pool(data: TipPoolIn, principal: Principal = Depends(get_principal), services=Depends(get_services)):
    with services.db.connection() as conn:
        with conn.cursor() as cur:
            return tips.create_pool(
                cur,
                organization_id=principal.organization_id,
                name=data.name,
                start_date=data.start_date,
                end_date=data.end_date,
                notes=data.notes,
                created_by=principal.user_id,
            )


@router.get("/{pool_id}")
def get_tip_pool(pool_id: str, principal: Principal = Depends(get_principal), services=Depends(get_services)):
    with services.db.connection() as conn:
        with conn.cursor() as cur:
            return tips.get_pool(cur, pool_id, principal.organization_id)


@router.patch("/{pool_id}")
def update_tip_pool(
    pool_id: str,
    data: TipPoolUpdate,
    principal: Principal = Depends(get_principal),
    services=Depends(get_services),
):
    with services.db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return tips.update_pool(cur, pool_id, principal.organization_id, data.model_dump(exclude_unset=True))


@router.put("/{pool_id}/members")
def set_tip_pool_members(
    pool_id: str,
    data: TipPoolMembersIn,
    principal: Principal = Depends(get_principal),
    services=Depends(get_services),
):
    with services.db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                members = tips.set_members(
                    cur,
                    pool_id,
                    principal.organization_id,
                    [(m.user_id, m.hours_worked) for m in data.members],
                )
                return {"members": members}


@router.delete("/{pool_id}/members/{user_id}")
def remove_tip_pool_member(
    pool_id: str,
    user_id: str,
    principal: Principal = Depends(get_principal),
    services=Depends(get_services),
):
    with services.db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                tips.remove_member(cur, pool_id, principal.organization_id, user_id)
                return {"ok": True}


@router.post("/{pool_id}/calculate")
def calculate_tip_pool(pool_id: str, principal: Principal = Depends(get_principal), services=Depends(get_services)):
    with services.db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return tips.calculate_pool(cur, pool_id, principal.organization_id)


@router.post("/{pool_id}/finalize")
def finalize_tip_pool(pool_id: str, principal: Principal = Depends(get_principal), services=Depends(get_services)):
    with services.db.connection() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return tips.finalize_pool(cur, services.jobs, pool_id, principal.organization_id)


@router.delete("/{pool_id}")
def delete_tip_pool(pool_id: str, principal: Principal = Depends(get_principal), services=Depends(get_services)):
    with services.db.connection() as conn:
        with conn.cursor() as cur:
            tips.delete_pool(cur, pool_id, principal.organization_id)
            return {"ok": True}
