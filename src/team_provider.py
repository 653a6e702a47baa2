from __future__ import annotations

from typing import AbstractSet, Any, Optional

import config
from cache import PredictiveCache, RunCache
from entities.github import NEW_TEAM_ID, PREDICTIVE_TEAM_ID, Action, Group, MembershipDiff, Team, first_attr
from errors import ProtocolError
from provider import diff_existing_updated
from team_service import TeamService, normalize_team_name, parse_maintainers

logger = config.get_logger(service="team_provider")


def metadata_change(existing: Any, changed: Any) -> str:
    if existing is None:
        return "add"
    if changed is None:
        return "remove"
    return "change"


class TeamProvider:
    def __init__(self, github: TeamService) -> None:
        self.github = github
        self._team_cache: dict[str, Team] = {}
        # Slugs GitHub reported missing during this run, until commit creates them
        self._missing: set[str] = set()

    @classmethod
    def from_config(
        cls,
        group_config: config.GroupConfig,
        run_cache: RunCache,
        predictive_cache: PredictiveCache,
        settings: Optional[config.Config] = None,
    ) -> TeamProvider:
        return cls(
            TeamService(
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

    def read(self, group: Group) -> Optional[Team]:
        """The GitHub team for `group`, or None if it does not exist yet."""
        slug = group.cn.lower()
        if slug in self._team_cache:
            return self._team_cache[slug]
        if slug in self._missing:
            return None

        team = self.github.read_team(group)
        if team is None:
            self._missing.add(slug)
            return None

        logger.debug(f"Loaded {team.team_dn} (id={team.team_id}) with {len(team.member_strings)} member(s)")
        self._team_cache[team.team_name] = team
        return team

    def diff(self, group: Group, ignored_users: AbstractSet[str] = frozenset()) -> MembershipDiff:
        """Changes needed for the team of `group`.

        A non-empty diff computed from the predictive cache is recomputed once from live data.
        """
        team = self.read(group) or self.placeholder_team(group)
        result = self.diff_existing_updated(team, group, ignored_users)
        if result.is_empty():
            return result

        # A team that has to be created has nothing to re-read
        if not team.is_placeholder:
            if not self.github.from_predictive_cache(group):
                return result
            self.github.invalidate_predictive_cache(group)
            self._team_cache.pop(group.cn.lower(), None)
            team = self.read(group) or self.placeholder_team(group)

        return self.diff_existing_updated(team, group, ignored_users)

    def diff_existing_updated(self, existing: Group, group: Group, ignored_users: AbstractSet[str] = frozenset()) -> MembershipDiff:
        result = diff_existing_updated(existing, group, ignored_users)
        result.metadata = self.diff_metadata(existing, group)
        return result

    def diff_metadata(self, existing: Group, group: Group) -> Optional[dict[str, Any]]:
        """Metadata changes of a team: creation, parent team and maintainers.

        Removals are reported but never applied.
        """
        changes: dict[str, Any] = {}
        if isinstance(existing, Team) and existing.is_placeholder:
            changes["create_team"] = True

        existing_parent = existing.metadata_fetch_if_exists("parent_team_name")
        changed_parent = group.metadata_fetch_if_exists("parent_team_name")
        if normalize_team_name(existing_parent) != normalize_team_name(changed_parent):
            change = metadata_change(existing_parent, changed_parent)
            changes["parent_team"] = change
            if change == "add":
                logger.info(f"ADD github_parent_team {changed_parent} to {existing.dn} in {self.github.org}")
            elif change == "remove":
                logger.info(f"REMOVE (NOOP) github_parent_team {existing_parent} from {existing.dn} in {self.github.org}")
            else:
                logger.info(f"CHANGE github_parent_team from {existing_parent} to {changed_parent} for {existing.dn} in {self.github.org}")

        existing_maintainers = existing.metadata_fetch_if_exists("team_maintainers")
        changed_maintainers = group.metadata_fetch_if_exists("team_maintainers")
        if existing_maintainers is None and changed_maintainers is None:
            pass
        elif existing_maintainers is None or changed_maintainers is None or (
            parse_maintainers(existing_maintainers) != parse_maintainers(changed_maintainers)
        ):
            change = metadata_change(existing_maintainers, changed_maintainers)
            changes["team_maintainers"] = change
            if change == "add":
                logger.info(f"ADD github_team_maintainers {changed_maintainers} to {existing.dn} in {self.github.org}")
            elif change == "remove":
                logger.info(f"REMOVE (NOOP) github_team_maintainers {existing_maintainers} from {existing.dn} in {self.github.org}")
            else:
                logger.info(
                    f"CHANGE github_team_maintainers from {existing_maintainers} to {changed_maintainers} "
                    f"for {existing.dn} in {self.github.org}"
                )

        return changes or None

    def change_ignored(self, action: Action) -> bool:
        """True if the action only concerns ignored users (organization non-members or pending members)."""
        if action.existing is None or action.updated is None:
            return False
        return self.diff_existing_updated(action.existing, action.updated, action.ignored_users).is_empty()

    def commit(self, group: Group) -> bool:
        """Create the team if needed and sync it. Returns True if a change was made."""
        slug = group.cn.lower()
        team = self.github.read_team(group)

        # The id of a team from the predictive cache is unknown
        if team is not None and team.team_id == PREDICTIVE_TEAM_ID:
            self.github.invalidate_predictive_cache(group)
            self._team_cache.pop(slug, None)
            team = self.github.read_team(group)

        created = False
        if team is None:
            created = self.github.create_team(group)
            if not created:
                logger.warning(f"Team {slug} was not created in {self.github.org}, skipping its members")
                return False
            self.github.invalidate_predictive_cache(group)
            self._team_cache.pop(slug, None)
            self._missing.discard(slug)
            team = self.github.read_team(group)
            if team is None:
                logger.critical(f"Team {slug} does not exist in {self.github.org} after creating it")
                raise ProtocolError(f"Team {slug} does not exist in {self.github.org} after creating it")

        return self.github.sync_team(group, team) or created

    def auto_generate_ignored_users(self, group: Group) -> frozenset[str]:
        """Members of `group` who are not members of the organization (pending invitees included)."""
        org_members = set(self.github.org_members())
        return frozenset(first_attr(m).lower() for m in group.member_strings) - org_members

    def placeholder_team(self, group: Group) -> Team:
        """Stand-in for a team that does not exist yet."""
        return Team(
            team_id=NEW_TEAM_ID,
            team_name=group.cn.lower(),
            members=(),
            ou=self.github.ou,
            metadata=dict(group.metadata or {}),
        )
