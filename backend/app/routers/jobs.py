from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..deps import Principal, get_services, require_owner
from ..jobs import QueueName
from ..logs import json_log

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/dead")
def list_dead_jobs(
    queue: Optional[QueueName] = None,
    limit: int = Query(100, ge=1, le=500),
    _principal: Principal = Depends(require_owner),
    services=Depends(get_services),
):
    return {"jobs": [j.to_dict() for j in services.jobs.list_dead(queue, limit=limit)]}


@router.post("/{job_id}/retry")
def retry_dead_job(job_id: str, principal: Principal = Depends(require_owner), services=Depends(get_services)):
    if not services.jobs.retry_dead(job_id):
        raise HTTPException(status_code=404, detail="dead job not found")
    json_log("info", "jobs.retried", job_id=job_id, user_id=principal.user_id)
    return {"ok": True}
