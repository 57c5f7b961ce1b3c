"""Caller identity supplied by the authentication gateway.

The service does not authenticate anyone itself. The gateway in front of it
verifies the session or token and forwards the result as ``X-User-Id`` and
``X-User-Role``. The redirect endpoint ignores both.
"""

from dataclasses import dataclass

from fastapi import Header, HTTPException

from redirector.enums import Role

__all__ = ["Principal", "get_principal"]


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: Role = Role.USER

    @property
    def is_staff(self) -> bool:
        return self.role.is_staff

    def can_manage(self, owner_id: str) -> bool:
        return self.is_staff or self.user_id == owner_id


async def get_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Principal:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return Principal(user_id=x_user_id, role=Role.from_str(x_user_role))
