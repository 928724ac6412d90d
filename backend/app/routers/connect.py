from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..deps import Principal, get_principal, get_services, require_owner

router = APIRouter(prefix="/connect", tags=["connect"])


class CreateAccountIn(BaseModel):
    country: str = Field(default="US", min_length=2, max_length=2)
    business_type: Optional[Literal["individual", "company"]] = None


@router.get("/status")
def connect_status(principal: Principal = Depends(get_principal), services=Depends(get_services)):
    return services.accounts.status(principal.organization_id)


@router.post("/refresh-status")
def refresh_status(principal: Principal = Depends(get_principal), services=Depends(get_services)):
    return services.accounts.refresh(principal.organization_id)


@router.post("/account")
def create_account(
    data: Optional[CreateAccountIn] = None,
    principal: Principal = Depends(require_owner),
    services=Depends(get_services),
):
    data = data or CreateAccountIn()
    return services.accounts.create_account(
        organization_id=principal.organization_id,
        user_id=principal.user_id,
        country=data.country.upper(),
        business_type=data.business_type,
    )


@router.post("/onboarding-link")
def onboarding_link(principal: Principal = Depends(get_principal), services=Depends(get_services)):
    return services.accounts.onboarding_link(principal.organization_id)
