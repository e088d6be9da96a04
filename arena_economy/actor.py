"""Caller identity supplied by the identity provider.

The engine trusts the role claims but still verifies resource ownership.
"""

from dataclasses import dataclass, field

from arena_economy.utils.errors import AuthorizationError, ErrorCode

ROLE_ADMIN = "admin"
ROLE_ORGANIZER = "organizer"
ROLE_SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Account id plus role claims of the caller."""

    account_id: str | None
    roles: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", frozenset(self.roles))

    @classmethod
    def system(cls) -> "Actor":
        """Internal scheduler identity (auto-cancel and similar sweeps)."""
        return cls(account_id=None, roles=frozenset({ROLE_SYSTEM, ROLE_ADMIN}))

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.roles

    @property
    def is_organizer(self) -> bool:
        return ROLE_ORGANIZER in self.roles or self.is_admin

    def require_admin(self) -> None:
        if not self.is_admin:
            raise AuthorizationError(
                ErrorCode.FORBIDDEN,
                "Administrator role required",
                details={"account_id": self.account_id},
            )

    def require_organizer(self) -> None:
        if not self.is_organizer:
            raise AuthorizationError(
                ErrorCode.FORBIDDEN,
                "Organizer role required",
                details={"account_id": self.account_id},
            )

    def require_owner(self, owner_id: str, resource_id: str) -> None:
        """Organizers act only on their own resources; admins act on any."""
        if self.is_admin:
            return
        if not self.is_organizer or self.account_id != owner_id:
            raise AuthorizationError(
                ErrorCode.NOT_OWNER,
                "Only the organizer of this resource may perform this action",
                details={"resource_id": resource_id, "account_id": self.account_id},
            )
