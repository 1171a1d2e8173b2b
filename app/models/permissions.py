"""
Permission engine data model
"""

from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from utils.exceptions import InvalidInputError

# =====================================
# ENUMS
# =====================================

class Role(str, Enum):
    ADMIN = "admin"
    RESELLER = "reseller"
    CONSUMER = "consumer"
    VIEWER = "viewer"
    SUPPORT = "support"

class AccountStatus(str, Enum):
    ACTIVE = "active"
    DEACTIVE = "deactive"

# Highest first; decides which role's permission set a client caches
ROLE_PRIORITY: List[Role] = [
    Role.ADMIN,
    Role.SUPPORT,
    Role.RESELLER,
    Role.CONSUMER,
    Role.VIEWER,
]


def parse_role(value: Any) -> Role:
    """Parse a single role name, raising InvalidInputError for unknown roles"""
    if isinstance(value, Role):
        return value
    if isinstance(value, str):
        try:
            return Role(value.strip().lower())
        except ValueError:
            pass
    valid = ", ".join(r.value for r in Role)
    raise InvalidInputError(f"Invalid role {value!r}. Must be one of: {valid}")


def normalize_roles(value: Any) -> FrozenSet[Role]:
    """Accept None, a role string or a list of role strings"""
    if value is None or value == "":
        return frozenset()
    if isinstance(value, (str, Role)):
        return frozenset({parse_role(value)})
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(parse_role(v) for v in value if v)
    raise InvalidInputError(f"Unsupported role representation: {type(value).__name__}")

# =====================================
# REFERENCE DATA
# =====================================

class Permission(BaseModel):
    """Catalog entry, immutable reference data"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    resource: str
    action: str
    description: str = ""

class RolePermission(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    permission_id: str

class UserPermission(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    permission_id: str
    granted: bool = True

# =====================================
# ACTOR
# =====================================

class ActorProfile(BaseModel):
    """The authenticated user whose access is being evaluated"""
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    roles: FrozenSet[Role] = Field(default_factory=frozenset)
    is_system_admin: bool = False
    account_status: AccountStatus = AccountStatus.ACTIVE

    @field_validator("roles", mode="before")
    @classmethod
    def _normalize_roles(cls, v):
        try:
            return normalize_roles(v)
        except InvalidInputError as e:
            raise ValueError(e.message) from e

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ActorProfile":
        """Build a profile from an authority-store profile document"""
        try:
            return cls(
                user_id=str(record.get("user_id") or ""),
                roles=record.get("role", record.get("roles")),
                is_system_admin=record.get("is_systemadmin", False) is True,
                account_status=record.get("account_status") or AccountStatus.ACTIVE,
            )
        except ValidationError as e:
            raise InvalidInputError(f"Invalid actor profile: {e.errors()[0]['msg']}") from e

    @property
    def role_tag(self) -> str:
        """Stable cache-key fragment for the actor's role set"""
        if not self.roles:
            return "none"
        return "+".join(sorted(r.value for r in self.roles))

    @property
    def primary_role(self) -> Role:
        for role in ROLE_PRIORITY:
            if role in self.roles:
                return role
        return Role.VIEWER

# =====================================
# CACHE / INVALIDATION
# =====================================

class InvalidationOptions(BaseModel):
    role: Optional[Role] = None
    user_id: Optional[str] = None
    resource: Optional[str] = None
    clear_all: bool = False

    def is_empty(self) -> bool:
        return not (self.role or self.user_id or self.resource or self.clear_all)

# =====================================
# RESPONSES
# =====================================

class RolePermissionsResult(BaseModel):
    """Conditional role-permission fetch result"""
    role: Optional[Role] = None
    version: int
    unchanged: bool = False
    permissions: Optional[List[str]] = None
    is_system_admin: bool = False

class PermissionPage(BaseModel):
    items: List[Permission]
    count: int
    page: int
    limit: int
