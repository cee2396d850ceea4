"""
Request dependencies: the ledger instance and the calling user
"""

from typing import Optional
from fastapi import Header, HTTPException, Request, status

from ..service import LedgerService
from ..rbac import Permission


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_caller_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Authenticated user id, set by the upstream authentication layer"""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id


def ensure_owner_or(ledger: LedgerService, caller_id: str, owner_id: str,
                    permission: Permission) -> None:
    """
    Allow the resource owner, or staff holding ``permission``

    Raises:
        AuthorizationError
    """
    if caller_id == owner_id:
        return
    ledger.principals.get_principal(caller_id).require(permission)
