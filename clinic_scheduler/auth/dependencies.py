from dataclasses import dataclass

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinic_scheduler.auth import jwt_handler

ROLES = {"provider", "client", "admin"}

security = HTTPBearer()


@dataclass(frozen=True)
class Identity:
    """Caller identity taken from a verified token; ``subject`` is an opaque id."""

    subject: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Identity:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    role = payload.get("role")
    if role not in ROLES:
        raise HTTPException(status_code=403, detail="Unknown role")

    return Identity(subject=str(subject), role=role)
