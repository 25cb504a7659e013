from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel


class AuthContext(BaseModel):
    """Caller identity as supplied by the authentication layer."""
    actor_id: str
    is_admin: bool = False


def get_auth_context(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_admin: bool = Header(default=False),
) -> AuthContext:
    if not x_actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return AuthContext(actor_id=x_actor_id, is_admin=x_actor_admin)


def require_admin(actor: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return actor
