import json
from typing import Any, Optional


def write_audit(
    cur,
    *,
    organization_id,
    action: str,
    entity_type: str,
    entity_id,
    details: Optional[dict[str, Any]] = None,
    user_id=None,
):
    cur.execute(
        """
        INSERT INTO audit_logs (id, organization_id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s::jsonb)
        """,
        (organization_id, user_id, action, entity_type, str(entity_id), json.dumps(details or {}, default=str)),
    )
