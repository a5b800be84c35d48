import os
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

bearer = HTTPBearer(auto_error=False)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"

# Permission table. Every route names one of these groups.
ALL_STAFF = (
    "admin",
    "manager",
    "operations_manager",
    "office_staff",
    "accountant",
    "power_agent",
    "regular_agent",
    "captain",
    "sailor",
)
BOOKING_WRITERS = ("admin", "manager", "operations_manager", "office_staff", "power_agent", "regular_agent")
COMPANY_WIDE_READERS = ("admin", "manager", "operations_manager", "office_staff", "accountant")
FLEET_MANAGERS = ("admin", "manager", "operations_manager", "office_staff")
BOAT_DELETERS = ("admin", "manager")
COST_CONFIGURATORS = ("admin", "operations_manager", "office_staff")
SLOT_BLOCKERS = ("admin", "manager", "power_agent")
PAYMENT_RECORDERS = ("admin", "manager", "office_staff", "accountant")
NOTIFICATION_SENDERS = ("admin", "manager", "operations_manager", "office_staff")


def issue_token(sub: str, role: str, company_id: str | None = None, ttl_minutes: int = 60) -> str:
    now = datetime.now(tz=timezone.utc)
    payload: dict = {
        "sub": sub,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    if company_id:
        payload["company_id"] = company_id
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")


def get_principal(
    creds: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)],
) -> dict:
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return decode_token(creds.credentials)


def has_role(principal: dict, roles: tuple[str, ...]) -> bool:
    return principal.get("role") in roles


def require_roles(*allowed_roles: str):
    allowed = set(allowed_roles)

    def _dep(principal: Annotated[dict, Depends(get_principal)]) -> dict:
        role = principal.get("role")
        if role not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return principal

    return _dep
