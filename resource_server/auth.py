from __future__ import annotations

import logging
from dataclasses import dataclass

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from resource_server.errors import forbidden, unauthorized

log = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class User:
    user_id: str
    role: str


def decode_token(token: str, secret: str, algorithm: str) -> User:
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.PyJWTError as exc:
        log.info("rejected bearer token: %s", exc)
        raise unauthorized() from exc
    subject = payload.get("sub")
    if not subject:
        raise unauthorized()
    return User(user_id=str(subject), role=str(payload.get("role", "")))


def get_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> User:
    if credentials is None or not credentials.credentials:
        raise unauthorized()
    cfg = request.app.state.settings
    return decode_token(credentials.credentials, cfg.jwt_secret, cfg.jwt_algorithm)


def get_admin(user: User = Depends(get_user)) -> User:
    if user.role != "admin":
        raise forbidden()
    return user
