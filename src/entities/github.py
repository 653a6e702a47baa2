from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Literal, Optional

from .model import BaseModel

# team_id of a placeholder for a team that has to be created before it can be synced
NEW_TEAM_ID = -999
# team_id of a team loaded from the predictive cache, where the real id is unknown
PREDICTIVE_TEAM_ID = -1


class OrgRole(str, Enum):
    """Mutually exclusive organization roles, in the order they are reconciled."""

    admin = "admin"
    member = "member"
    security_manager = "security_manager"

    @property
    def graphql_value(self) -> str:
        return _GRAPHQL_ROLE_NAMES[self]

    @classmethod
    def from_graphql(cls, value: str) -> OrgRole:
        for role, graphql_value in _GRAPHQL_ROLE_NAMES.items():
            if graphql_value == value:
                return role
        raise ValueError(f"Unknown organization role {value!r}")


_GRAPHQL_ROLE_NAMES = {
    OrgRole.admin: "ADMIN",
    OrgRole.member: "MEMBER",
    OrgRole.security_manager: "SECURITY-MANAGER",
}

ROLES: tuple[OrgRole, ...] = tuple(OrgRole)


def first_attr(dn: str) -> str:
    """Value of the first attribute of a distinguished name: "cn=admin,ou=org" -> "admin"."""
    first = dn.split(",", 1)[0]
    if "=" not in first:
        return first
    return first.split("=", 1)[1]


def role_dn(role: OrgRole | str, ou: str) -> str:
    name = role.value if isinstance(role, OrgRole) else role
    return f"cn={name},{ou}"


class Group:
    """Membership snapshot for a role or a team, either desired or observed.

    Members are compared case-insensitively. The spelling most recently seen for a
    member is kept for display.
    """

    def __init__(
        self,
        dn: str,
        members: Iterable[str] = (),
        metadata: Optional[dict[str, Any]] = None,
        description: str = "",
    ) -> None:
        self.dn = dn
        self.description = description
        self.metadata = dict(metadata) if metadata is not None else None
        self._members: dict[str, str] = {}
        for member in members:
            self.add_member(member)

    @property
    def cn(self) -> str:
        return first_attr(self.dn)

    @property
    def member_strings(self) -> set[str]:
        return set(self._members.values())

    @property
    def member_strings_insensitive(self) -> set[str]:
        return set(self._members)

    def is_member(self, member: str) -> bool:
        return member.lower() in self._members

    def add_member(self, member: str) -> None:
        self._members[member.lower()] = member

    def remove_member(self, member: str) -> None:
        self._members.pop(member.lower(), None)

    def update_case(self, member: str) -> bool:
        key = member.lower()
        if key not in self._members:
            return False
        self._members[key] = member
        return True

    def metadata_fetch_if_exists(self, key: str) -> Any:
        if self.metadata is None:
            return None
        return self.metadata.get(key)

    def copy(self) -> Group:
        return Group(
            dn=self.dn,
            members=self.member_strings,
            metadata=copy.deepcopy(self.metadata),
            description=self.description,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Group):
            return NotImplemented
        return (
            self.dn.lower() == other.dn.lower()
            and self.member_strings_insensitive == other.member_strings_insensitive
            and (self.metadata or {}) == (other.metadata or {})
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"<{type(self).__name__} dn={self.dn!r} members={sorted(self.member_strings)!r} metadata={self.metadata!r}>"


class Team(Group):
    """Observed GitHub team. Member logins are stored lower-cased, the way the API reports them."""

    def __init__(
        self,
        team_id: int,
        team_name: str,
        members: Iterable[str],
        ou: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.team_id = team_id
        self.team_name = team_name.lower()
        self.team_dn = f"cn={self.team_name},{ou}"
        self.ou = ou
        super().__init__(dn=self.team_dn, members=(m.lower() for m in members), metadata=metadata)

    @property
    def is_placeholder(self) -> bool:
        return self.team_id == NEW_TEAM_ID

    def copy(self) -> Team:
        return Team(
            team_id=self.team_id,
            team_name=self.team_name,
            members=self.member_strings,
            ou=self.ou,
            metadata=copy.deepcopy(self.metadata),
        )


class ImplementationStep(BaseModel):
    """One mutation for an action.

    A "remove" step with `moved_to` set records a subject leaving a role because it moves
    to another one. The add on the new role vacates the old role, so no call is made for it.
    """

    operation: Literal["add", "remove"]
    subject: str
    moved_to: Optional[OrgRole] = None


@dataclass(eq=False)
class Action:
    dn: str
    existing: Optional[Group]
    updated: Optional[Group]
    ou: str
    implementation: list[ImplementationStep] = field(default_factory=list)
    ignored_users: frozenset[str] = frozenset()

    def add_implementation(self, step: ImplementationStep) -> None:
        self.implementation.append(step)


@dataclass
class MembershipDiff:
    added: set[str] = field(default_factory=set)
    removed: set[str] = field(default_factory=set)
    metadata: Optional[dict[str, Any]] = None

    def membership_changed(self) -> bool:
        return bool(self.added or self.removed)

    def is_empty(self) -> bool:
        return not self.membership_changed() and not self.metadata


@dataclass(frozen=True)
class CategorizedChange:
    member: str
    role: OrgRole


@dataclass
class CategorizedChanges:
    """Changes across all roles of one organization, keyed by lower-cased subject."""

    added: dict[str, CategorizedChange] = field(default_factory=dict)
    removed: dict[str, CategorizedChange] = field(default_factory=dict)
    moved: dict[str, CategorizedChange] = field(default_factory=dict)

    def for_role(self, bucket: dict[str, CategorizedChange], role: OrgRole) -> list[str]:
        """Correctly cased members of `bucket` tagged with `role`, sorted by lower-cased name."""
        return [change.member for key, change in sorted(bucket.items()) if change.role == role]
