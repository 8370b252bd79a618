from __future__ import annotations

import base64
import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from fastapi import Request, Response

from cuddly_auth.core.config import settings
from cuddly_auth.models.user import User


def _fernet() -> Fernet:
    digest = hashlib.sha256(settings.session_password.encode("utf-8")).digest()
    key = base64.urlsafe_b64encode(digest)
    return Fernet(key)


def session_user(user: User) -> dict[str, Any]:
    return {"id": str(user.id), "email": user.email, "name": user.name}


def seal_session(user: dict[str, Any], *, now: float | None = None) -> str:
    issued_at = int(time.time() if now is None else now)
    expires = datetime.fromtimestamp(issued_at + settings.session_max_age_seconds, tz=timezone.utc)
    payload = {"user": user, "expires": expires.isoformat()}
    token = _fernet().encrypt_at_time(json.dumps(payload).encode("utf-8"), issued_at)
    return token.decode("utf-8")


def unseal_session(token: str | None, *, now: float | None = None) -> dict[str, Any] | None:
    raw = (token or "").strip()
    if not raw:
        return None
    current_time = int(time.time() if now is None else now)
    try:
        data = _fernet().decrypt_at_time(raw.encode("utf-8"), settings.session_max_age_seconds, current_time)
    except InvalidToken:
        return None
    try:
        payload = json.loads(data)
    except ValueError:
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("user"), dict):
        return None
    return payload


def set_session_cookie(response: Response, user: User) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        seal_session(session_user(user)),
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite.lower(),
        max_age=settings.session_max_age_seconds,
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.secure_cookies,
        httponly=True,
        samesite=settings.cookie_samesite.lower(),
    )


def read_session(request: Request) -> dict[str, Any] | None:
    return unseal_session(request.cookies.get(settings.session_cookie_name))
