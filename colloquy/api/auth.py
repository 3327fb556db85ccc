"""Caller identity from trusted proxy headers.

The fronting auth proxy authenticates the session and forwards the user id
and role. A request without a user id is unauthenticated (fail closed).
"""

from __future__ import annotations

from dataclasses import dataclass

from starlette.requests import Request

from colloquy.config import Settings


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    is_admin: bool = False


def header_identity(request: Request, settings: Settings) -> UserIdentity | None:
    user_id = request.headers.get(settings.user_header, "").strip()
    if not user_id:
        return None
    role = request.headers.get(settings.role_header, "").strip().lower()
    return UserIdentity(user_id=user_id, is_admin=role == "admin")
