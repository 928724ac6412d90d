from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..deps import get_services
from ..logs import json_log
from ..webhooks.verification import SignatureVerificationError

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _receive(request: Request, gateway, signature: Optional[str]):
    # Signature is computed over the exact bytes received; never re-serialize.
    body = await request.body()
    try:
        result = await run_in_threadpool(gateway.handle, body, signature)
    except SignatureVerificationError as ex:
        json_log(
            "warning",
            "webhook.rejected",
            source=gateway.source,
            reason=ex.reason,
            client_ip=(request.client.host if request.client else None),
        )
        return JSONResponse(status_code=400, content={"detail": "invalid signature"})
    except Exception as ex:
        json_log("error", "webhook.failed", source=gateway.source, error=str(ex))
        return JSONResponse(status_code=500, content={"detail": "webhook processing failed"})
    return {"received": True, "status": result.status}


@router.post("/processor")
async def processor_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services=Depends(get_services),
):
    return await _receive(request, services.platform_webhooks, stripe_signature)


@router.post("/processor/connect")
async def processor_connect_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services=Depends(get_services),
):
    return await _receive(request, services.connect_webhooks, stripe_signature)
