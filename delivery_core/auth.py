import logging

import httpx
from fastapi import Header
from pydantic import BaseModel

from .config import settings
from .db import db_session
from .errors import Unauthorized
from .models import Profile

logger = logging.getLogger(__name__)


class CurrentUser(BaseModel):
    id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def fetch_identity(token: str) -> dict:
    """Ask the hosted identity service who owns this bearer token."""
    if not settings.AUTH_URL:
        raise Unauthorized("Identity service is not configured")
    headers = {"Authorization": f"Bearer {token}"}
    if settings.AUTH_API_KEY:
        headers["apikey"] = settings.AUTH_API_KEY
    try:
        r = httpx.get(f"{settings.AUTH_URL.rstrip('/')}/user", headers=headers, timeout=settings.HTTP_TIMEOUT_SECONDS)
    except httpx.HTTPError as exc:
        logger.error("Identity service unreachable: %s", exc)
        raise Unauthorized("Unauthorized") from exc
    if r.status_code != 200:
        raise Unauthorized("Unauthorized")
    data = r.json()
    if not data.get("id"):
        raise Unauthorized("Unauthorized")
    return data


def get_current_user(authorization: str | None = Header(None)) -> CurrentUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized("Unauthorized")
    identity = fetch_identity(authorization.split(" ", 1)[1].strip())

    with db_session() as db:
        profile = db.get(Profile, identity["id"])
        role = profile.role if profile else "customer"
    return CurrentUser(id=identity["id"], role=role)
