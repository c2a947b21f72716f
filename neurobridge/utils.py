from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from .request_context import RequestData, set_request_data
from .services import auth


def bearer_token(authorization: Optional[str]) -> str:
    raw = (authorization or "").strip()
    if raw[:7].lower() == "bearer ":
        return raw[7:].strip()
    return ""


async def get_request_data(authorization: Optional[str] = Header(default=None)) -> Optional[RequestData]:
    """Attach the caller's identity to the request context (None when anonymous)."""
    token = bearer_token(authorization)
    if not token:
        set_request_data(None)
        return None
    return await auth.set_context_from_token(token)


async def require_authenticated_user(rd: Optional[RequestData] = Depends(get_request_data)) -> RequestData:
    if rd is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return rd
