from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Role(str, Enum):
    CUSTOMER = "customer"
    INSPECTOR = "inspector"
    BRANCH_ADMIN = "branchAdmin"
    SUPERADMIN = "superadmin"


ROLE_LEVELS = {
    Role.CUSTOMER: -1,
    Role.INSPECTOR: 0,
    Role.BRANCH_ADMIN: 1,
    Role.SUPERADMIN: 2,
}

STAFF_ROLES = frozenset({Role.INSPECTOR, Role.BRANCH_ADMIN, Role.SUPERADMIN})
CUSTOMER_ROLES = frozenset({Role.CUSTOMER})

# Branch id that grants visibility across every branch. Only read by Principal.
CROSS_BRANCH_SENTINEL = "main"


class Operation(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DenyReason(str, Enum):
    ROLE_INSUFFICIENT = "role-insufficient"
    BRANCH_MISMATCH = "branch-mismatch"
    NOT_OWNER = "not-owner"
    NOT_PUBLIC = "not-public"


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role
    permission_level: int
    branch_id: Optional[str] = None
    company_id: Optional[str] = None
    display_name: Optional[str] = None
    has_cross_branch_access: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "has_cross_branch_access",
            self.branch_id == CROSS_BRANCH_SENTINEL and self.permission_level >= 0,
        )

    @property
    def is_superadmin(self) -> bool:
        return self.permission_level >= ROLE_LEVELS[Role.SUPERADMIN]

    @property
    def label(self) -> str:
        return self.display_name or self.id


SYSTEM_ACTOR_ID = "system"
SYSTEM_ACTOR_NAME = "System"


@dataclass(frozen=True)
class Resource:
    """A proposed or detached document, shaped like the ORM rows."""

    id: Optional[str]
    created_by: Optional[str]
    branch_id: Optional[str] = None
    company_id: Optional[str] = None
    is_public: bool = False


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class PermissionContext:
    """Everything a transition needs to know about who is asking.

    Built once per request from the token and passed explicitly down the call chain.
    """

    principal: Principal
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def actor_id(self) -> str:
        return self.principal.id

    @property
    def actor_name(self) -> str:
        return self.principal.label
