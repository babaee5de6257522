from typing import Any, Mapping, Optional

from pydantic import BaseModel, EmailStr

from errors import Forbidden

ADMIN_ONLY_ACTIONS = {"approve", "delete", "update_status", "list_all", "manage"}
OWNER_ACTIONS = {"view", "return", "cancel"}


class AuthUser(BaseModel):
    id: str
    email: EmailStr
    name: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def owner_id(resource: Mapping[str, Any]) -> Optional[str]:
    value = resource.get("user_id")
    return str(value) if value is not None else None


def can_act(actor: Optional[AuthUser], resource: Optional[Mapping[str, Any]], action: str) -> bool:
    """Decide whether ``actor`` may perform ``action`` on ``resource``.

    Admins may do everything; a regular user may only view, return or cancel
    resources whose ``user_id`` is their own.
    """
    if actor is None:
        return False
    if actor.is_admin:
        return action in ADMIN_ONLY_ACTIONS or action in OWNER_ACTIONS
    if action in OWNER_ACTIONS and resource is not None:
        return owner_id(resource) == actor.id
    return False


def require(actor: Optional[AuthUser], resource: Optional[Mapping[str, Any]], action: str, message: str) -> None:
    if not can_act(actor, resource, action):
        raise Forbidden(message)
