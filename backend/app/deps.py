from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException, Request

SESSION_COOKIE_NAME = "pos_session"


@dataclass(frozen=True)
class Principal:
    user_id: str
    organization_id: str
    role: str

    @property
    def is_owner(self) -> bool:
        return self.role == "owner"


def get_services(request: Request):
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="service not ready")
    return services


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


class SessionPrincipalResolver:
    """Resolves an opaque session token issued by the auth service."""

    def __init__(self, db):
        self.db = db

    def resolve(self, token: str) -> Principal:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT s.user_id, s.expires_at, s.is_active, u.organization_id, u.role
                    FROM auth_sessions s
                    JOIN users u ON u.id = s.user_id
                    WHERE s.token = %s
                    """,
                    (token,),
                )
                row = cur.fetchone()
        now = datetime.now(timezone.utc)
        if not row or not row["is_active"] or row["expires_at"] < now:
            raise HTTPException(status_code=401, detail="invalid token")
        return Principal(user_id=str(row["user_id"]), organization_id=str(row["organization_id"]), role=row["role"])


def get_principal(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
    services=Depends(get_services),
) -> Principal:
    token = _extract_session_token(authorization, cookie_token)
    return SessionPrincipalResolver(services.db).resolve(token)


def require_owner(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_owner:
        raise HTTPException(status_code=403, detail="only organization owners can do this")
    return principal
