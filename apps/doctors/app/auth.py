from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Callable

from fastapi import Depends, Request

from .config import Role, get_settings
from .errors import ConfigurationError, Forbidden, Unauthorized


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def require_internal_secret(request: Request) -> None:
    st = get_settings()
    if not st.require_internal_secret:
        return
    # The header is untrusted input, compared in constant time.
    provided = (request.headers.get("X-Internal-Secret") or "").strip()
    if not st.internal_secret:
        # Fail closed so the service is not accidentally exposed.
        raise ConfigurationError("internal auth not configured")
    if not provided or not hmac.compare_digest(provided, st.internal_secret):
        raise Unauthorized("internal auth required")


def get_caller(request: Request) -> Caller:
    """Identity as asserted by the upstream gateway."""
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise Unauthorized("authentication required")
    raw = (request.headers.get("X-User-Role") or "").strip().lower()
    try:
        role = Role(raw)
    except ValueError:
        raise Forbidden("unknown role", details={"role": raw})
    return Caller(user_id=user_id, role=role)


def require_role(*roles: Role) -> Callable[..., Caller]:
    allowed = frozenset(roles)

    def _dep(caller: Caller = Depends(get_caller)) -> Caller:
        if caller.role not in allowed:
            raise Forbidden(
                "insufficient role",
                details={"required": sorted(r.value for r in allowed), "role": caller.role.value},
            )
        return caller

    return _dep
