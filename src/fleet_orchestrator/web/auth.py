"""Bearer-token authentication for the JSON API."""

import sqlite3

from starlette.requests import Request

from fleet_orchestrator.core.users import get_user_by_token
from fleet_orchestrator.db.models import User


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def current_user(request: Request, db: sqlite3.Connection) -> User | None:
    """Resolve the request's bearer token to a user, or None if it is missing or unknown."""
    token = bearer_token(request)
    if not token:
        return None
    return get_user_by_token(db, token)
