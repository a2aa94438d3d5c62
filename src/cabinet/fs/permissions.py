"""Permission levels, principals and the access check.

``check`` is a pure function of the resource's owner, its grants and the
caller. Loading grants and raising on denial is ``SharingService.require``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from .exceptions import ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable


class Permission(str, Enum):
    """Ordered permission level: ``VIEW < EDIT < MANAGE``."""

    VIEW = "view"
    EDIT = "edit"
    MANAGE = "manage"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @classmethod
    def parse(cls, value: str | Permission) -> Permission:
        """Return the level named by *value*, raising ``ValidationError`` if unknown."""
        try:
            return cls(value)
        except ValueError:
            names = ", ".join(p.value for p in cls)
            raise ValidationError(
                f"Invalid permission: {value!r}. Must be one of {names}."
            ) from None

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Permission):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Permission):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Permission):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Permission):
            return NotImplemented
        return self.rank >= other.rank


_RANKS: dict[Permission, int] = {
    Permission.VIEW: 0,
    Permission.EDIT: 1,
    Permission.MANAGE: 2,
}


@dataclass(frozen=True, slots=True)
class Principal:
    """Identity of the caller, supplied by the transport layer.

    ``is_admin`` is a capability that bypasses grant resolution; it is
    not a permission level.
    """

    user_id: str
    is_admin: bool = False


class Owned(Protocol):
    owner_id: str


class GrantLike(Protocol):
    grantee_id: str
    permission: str


def check(
    resource: Owned,
    grants: Iterable[GrantLike],
    principal: Principal,
    required: Permission,
) -> bool:
    """Return True if *principal* holds at least *required* on *resource*."""
    if principal.is_admin:
        return True
    if resource.owner_id == principal.user_id:
        return True
    for grant in grants:
        if grant.grantee_id == principal.user_id:
            return Permission(grant.permission) >= required
    return False
