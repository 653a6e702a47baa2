from __future__ import annotations

from typing import AbstractSet, Optional

import config
from cache import PredictiveCache, RunCache
from entities.github import ROLES, Action, Group, MembershipDiff, OrgRole, first_attr, role_dn
from errors import InvalidOperationError
from org_service import OrgService
from provider import diff_existing_updated

logger = config.get_logger(service="org_provider")


class OrgProvider:
    """Organization roles as groups: one group per role, built from the organization member list."""

    def __init__(self, github: OrgService) -> None:
        self.github = github
        self._role_cache: dict[OrgRole, Group] = {}

    @classmethod
    def from_config(
        cls,
        group_config: config.GroupConfig,
        run_cache: RunCache,
        predictive_cache: PredictiveCache,
        settings: Optional[config.Config] = None,
    ) -> OrgProvider:
        return cls(
            OrgService(
                org=group_config.org,
                token=group_config.token,
                ou=group_config.base,
                addr=group_config.addr,
                ignore_not_found=group_config.ignore_not_found,
                run_cache=run_cache,
                predictive_cache=predictive_cache,
                settings=settings,
            )
        )

    def read_by_role_name(self, role: OrgRole | str) -> Group:
        """Current members of a role. The same object is returned for the rest of the run."""
        role = self.role_name(role)
        if role not in self._role_cache:
            self._role_cache[role] = self._role_to_group(role)
        return self._role_cache[role]

    def read_by_group(self, group: Group) -> Group:
        return self.read_by_role_name(group.cn)

    def diff(self, group: Group, ignored_users: AbstractSet[str] = frozenset()) -> MembershipDiff:
        return diff_existing_updated(self.read_by_group(group), group, ignored_users)

    def commit(self, action: Action) -> bool:
        if not action.implementation or action.updated is None:
            logger.debug(f"Nothing to commit for {action.dn}")
            return False
        return self.github.sync(action.implementation, self.role_name(action.updated.cn))

    def invalidate_predictive_cache(self) -> None:
        self._role_cache = {}
        self.github.invalidate_org_members_predictive_cache()

    def pending_members(self) -> set[str]:
        return self.github.pending_members()

    @staticmethod
    def role_name(role: OrgRole | str) -> OrgRole:
        if isinstance(role, OrgRole):
            return role
        try:
            return OrgRole(first_attr(role).lower())
        except ValueError as e:
            supported = ", ".join(r.value for r in ROLES)
            raise InvalidOperationError(f"Invalid role {role!r}. Supported values: {supported}.") from e

    def _role_to_group(self, role: OrgRole) -> Group:
        org_members = self.github.org_members()
        return Group(
            dn=role_dn(role, self.github.ou),
            members={username for username, member_role in org_members.items() if member_role is role},
            description=f"Users with role {role.value} on organization {self.github.org}",
        )
