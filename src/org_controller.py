"""Reconciliation of organization roles.

Organization roles are mutually exclusive, so unlike teams the changes are categorized
across all roles at once before any action is built:

+-------------------+----------------+-----------------+----------------+----------------+
|                   | Has admin role | Has member role | Pending invite | Does not exist |
+-------------------+----------------+-----------------+----------------+----------------+
| In "admin" group  |   No change    |      Move       |  Leave as-is   |    Invite      |
| In "member" group |     Move       |    No change    |  Leave as-is   |    Invite      |
| No entitlement    |    Remove      |     Remove      |  Cancel invite |      n/a       |
+-------------------+----------------+-----------------+----------------+----------------+

Feature flags (`features` in the group configuration, default all) can disable inviting
new members and removing members. Moving a member between roles is always enabled.

Invited users only become members once they accept. Until then they are reported as
pending and are treated as if they already had the role they are declared with, so they
are not re-invited on every run.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

import config
from cache import PredictiveCache, RunCache
from controller import BaseController
from desired_state import DesiredState
from entities.github import (
    ROLES,
    Action,
    CategorizedChange,
    CategorizedChanges,
    Group,
    ImplementationStep,
    MembershipDiff,
    OrgRole,
    first_attr,
    role_dn,
)
from errors import ConfigurationError, DuplicateUserError, InvalidOperationError
from org_provider import OrgProvider

logger = config.get_logger(service="org_controller")

# Pending invitations do not say which role they were sent for
DISINVITE_ROLE = OrgRole.member


def categorize_changes(diffs: Iterable[tuple[OrgRole, MembershipDiff]]) -> CategorizedChanges:
    """Split per-role diffs into organization additions, removals and role moves.

    A subject removed from one role and added to another is a move, tagged with the role
    it moves to, regardless of the order in which the roles are processed.
    """
    changes = CategorizedChanges()
    for role, diff in diffs:
        for member in sorted(diff.added, key=str.lower):
            key = member.lower()
            if key in changes.removed:
                del changes.removed[key]
                changes.moved[key] = CategorizedChange(member=member, role=role)
            else:
                changes.added[key] = CategorizedChange(member=member, role=role)

        for member in sorted(diff.removed, key=str.lower):
            key = member.lower()
            if key in changes.added:
                changes.moved[key] = changes.added.pop(key)
            else:
                changes.removed[key] = CategorizedChange(member=member, role=role)
    return changes


def describe(users: list[str]) -> str:
    return f"{len(users)} {'person' if len(users) == 1 else 'people'}: {', '.join(sorted(first_attr(u) for u in users))}"


class OrgController(BaseController[config.OrgGroupConfig]):
    config_model = config.OrgGroupConfig

    def __init__(  # noqa: PLR0913
        self,
        group_name: str,
        group_config: dict[str, Any],
        desired_state: DesiredState,
        *,
        run_cache: Optional[RunCache] = None,
        predictive_cache: Optional[PredictiveCache] = None,
        settings: Optional[config.Config] = None,
        provider: Optional[OrgProvider] = None,
    ) -> None:
        super().__init__(
            group_name,
            group_config,
            desired_state,
            run_cache=run_cache,
            predictive_cache=predictive_cache,
            settings=settings,
        )
        self.provider = provider or OrgProvider.from_config(self.config, self.run_cache, self.predictive_cache, settings)
        self._existing_groups: Optional[dict[OrgRole, Group]] = None
        self._changes: Optional[list[Action]] = None

    @property
    def ignored_users(self) -> frozenset[str]:
        return self.config.ignored_users

    def role_dn(self, role: OrgRole) -> str:
        return role_dn(role, self.config.base)

    def prefetch(self) -> None:
        self.existing_groups()

    def calculate(self) -> list[Action]:
        self.actions = []

        self.validate_github_org_ous()
        self.validate_no_dupes()

        changes = self.changes()
        if changes:
            self.print_differences(added=[], removed=[], changed=changes, ignored_users=self.ignored_users)
            self.actions.extend(changes)
        else:
            logger.debug(f"UNCHANGED: No GitHub organization changes for {self.group_name}")
        return list(self.actions)

    def apply(self, action: Action) -> bool:
        if action.existing is None or action.updated is None:
            logger.critical(f"{action.dn}: creating or removing a GitHub organization is not supported")
            raise InvalidOperationError(f"Invalid Operation on {action.dn}")

        if self.provider.commit(action):
            logger.debug(f"APPLY: Updating GitHub organization {action.dn}")
            return True

        logger.warning(f"DID NOT APPLY: Changes not needed to {action.dn}")
        logger.debug(f"Old: {action.existing!r}")
        logger.debug(f"New: {action.updated!r}")
        return False

    def validate_github_org_ous(self) -> None:
        """Every role has a group definition, and there are no groups for other roles."""
        defined = {dn.lower() for dn in self.desired_state.read_all(self.group_name, self.config)}

        for role in ROLES:
            if self.role_dn(role).lower() not in defined:
                logger.critical(f"GitHubOrg: No group definition for {self.group_name}:{role.value} - abort!")
                raise ConfigurationError(f"GitHub organization {self.group_name} must define the {role.value} role")

        known = {role.value for role in ROLES}
        unexpected = sorted({first_attr(dn) for dn in defined} - known)
        if unexpected:
            logger.critical(f"GitHubOrg: Unexpected role(s) in {self.group_name}: {', '.join(unexpected)}")
            raise ConfigurationError(f"Unexpected role(s) in GitHub organization {self.group_name}: {', '.join(unexpected)}")

    def validate_no_dupes(self) -> None:
        users_seen: set[str] = set()
        for role in ROLES:
            users = self.desired_state.read(self.role_dn(role)).member_strings_insensitive
            dupes = users_seen & users
            if dupes:
                logger.critical(f"Users in multiple roles for {self.group_name}: {', '.join(sorted(dupes))}")
                raise DuplicateUserError(f"Abort due to users in multiple roles: {', '.join(sorted(dupes))}")
            users_seen.update(users)

    def existing_groups(self) -> dict[OrgRole, Group]:
        """Current members per role. These are the provider's groups, so changes here show up in its diffs."""
        if self._existing_groups is None:
            self._existing_groups = {role: self.provider.read_by_role_name(role) for role in ROLES}
        return self._existing_groups

    def categorized_changes(self, groups: dict[OrgRole, Group]) -> CategorizedChanges:
        return categorize_changes((role, self.provider.diff(groups[role], self.ignored_users)) for role in ROLES)

    def changes(self) -> list[Action]:
        if self._changes is None:
            self._changes = self._compute_changes()
        return self._changes

    def _compute_changes(self) -> list[Action]:
        features = self.config.enabled_features
        existing = self.existing_groups()

        # Private copies, mutated below when invites or removals are suppressed
        groups = {role: self.read_desired(self.role_dn(role)) for role in ROLES}

        chg = self.categorized_changes(groups)
        pending = self.provider.pending_members()

        for user in self.disinvited_users(groups, pending):
            existing[DISINVITE_ROLE].add_member(user)
            chg.removed[user.lower()] = CategorizedChange(member=user, role=DISINVITE_ROLE)

        result = []
        for role in ROLES:
            action = Action(
                dn=self.role_dn(role),
                existing=existing[role],
                updated=groups[role],
                ou=self.group_name,
                ignored_users=self.ignored_users,
            )
            invited = chg.for_role(chg.added, role)
            moved_in = chg.for_role(chg.moved, role)
            removals = chg.for_role(chg.removed, role)
            moved_out = [
                change for key, change in sorted(chg.moved.items()) if change.role is not role and existing[role].is_member(key)
            ]

            # Already invited, so treat them as having the role until they accept
            for user in self.remove_pending(invited, pending):
                existing[role].add_member(user)

            if "invite" in features:
                for user in invited:
                    action.add_implementation(ImplementationStep(operation="add", subject=user))
            elif invited:
                logger.debug(f"GitHubOrg {self.group_name}:{role.value}: Feature `invite` disabled. Not inviting {describe(invited)}.")
                for user in invited:
                    groups[role].remove_member(user)

            # Adding to the new role vacates the old one, so moves are never gated
            for user in moved_in:
                action.add_implementation(ImplementationStep(operation="add", subject=user))
            for change in moved_out:
                action.add_implementation(ImplementationStep(operation="remove", subject=change.member, moved_to=change.role))

            if "remove" in features:
                for user in removals:
                    action.add_implementation(ImplementationStep(operation="remove", subject=user))
            elif removals:
                logger.debug(f"GitHubOrg {self.group_name}:{role.value}: Feature `remove` disabled. Not removing {describe(removals)}.")
                for user in removals:
                    groups[role].add_member(user)

            diff = self.provider.diff(groups[role], self.ignored_users)
            if not diff.membership_changed():
                logger.debug(f"UNCHANGED: No GitHub organization changes for {self.group_name}:{role.value}")
                continue

            # GitHub reports logins in lower case, prefer the spelling from the entitlements
            for change in [*chg.moved.values(), *chg.removed.values()]:
                existing[role].update_case(change.member)

            result.append(action)

        # Changes computed from predictive data are confirmed against the API once
        if result and self.provider.github.org_members_from_predictive_cache():
            logger.debug(f"Recomputing changes for {self.group_name} from live data")
            self.provider.invalidate_predictive_cache()
            self._existing_groups = None
            return self._compute_changes()

        return result

    @staticmethod
    def remove_pending(invited: list[str], pending: set[str]) -> list[str]:
        """Remove users with a pending invitation from `invited` (in place) and return them."""
        already_invited = [user for user in invited if first_attr(user).lower() in pending]
        invited[:] = [user for user in invited if user not in already_invited]
        return already_invited

    def disinvited_users(self, groups: dict[OrgRole, Group], pending: set[str]) -> list[str]:
        """Pending users who are not declared in any role and are not ignored."""
        declared = {first_attr(member).lower() for group in groups.values() for member in group.member_strings}
        return sorted(pending - declared - self.ignored_users)
