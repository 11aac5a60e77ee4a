"""Request identity resolution: Bearer session token or guest device header."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.identity import GuestIdentity, Identity, UserIdentity, normalize_device_id
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)
GUEST_DEVICE_HEADER = "X-Guest-Device-Id"


@dataclass
class AuthContext:
    identity: Identity
    email: Optional[str] = None
    email_verified: bool = False
    device_id: Optional[str] = None


def _user_context(credentials: HTTPAuthorizationCredentials, device_id: Optional[str]) -> AuthContext:
    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return AuthContext(
        identity=UserIdentity(str(payload.get("sub", "")).strip()),
        email=str(payload.get("email", "") or "") or None,
        email_verified=bool(payload.get("email_verified", False)),
        device_id=device_id,
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    x_guest_device_id: Optional[str] = Header(default=None),
) -> AuthContext:
    """Resolve the caller: a valid session token wins, else the guest device id."""
    device_id = normalize_device_id(x_guest_device_id) or None
    if credentials and credentials.scheme.lower() == "bearer":
        return _user_context(credentials, device_id)
    if device_id:
        return AuthContext(identity=GuestIdentity(device_id), device_id=device_id)
    raise HTTPException(
        status_code=401,
        detail="Provide a Bearer session token or an X-Guest-Device-Id header.",
    )


async def get_user_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    x_guest_device_id: Optional[str] = Header(default=None),
) -> AuthContext:
    """Like ``get_auth_context`` but guests are rejected."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return _user_context(credentials, normalize_device_id(x_guest_device_id) or None)
