from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

import jmespath as jp

import config
from cache import CacheEntry, Provenance
from entities.github import NEW_TEAM_ID, PREDICTIVE_TEAM_ID, Group, Team
from errors import ProtocolError
from github_service import GitHubService, require, response_json

logger = config.get_logger(service="team_service")

TEAM_QUERY = """
query($org: String!, $slug: String!, $first: Int!, $after: String) {
  organization(login: $org) {
    team(slug: $slug) {
      databaseId
      parentTeam { slug }
      members(first: $first, after: $after, membership: IMMEDIATE) {
        edges { cursor role node { login } }
      }
    }
  }
}
"""


@dataclass
class TeamData:
    team_id: int
    members: list[str] = field(default_factory=list)
    maintainers: set[str] = field(default_factory=set)
    parent_team_name: Optional[str] = None


def parse_maintainers(value: Any) -> set[str]:
    """Maintainers declared as a list or as a comma/whitespace separated string, lower-cased."""
    if value is None:
        return set()
    if isinstance(value, str):
        value = re.split(r"[\s,]+", value)
    return {str(user).strip().lower() for user in value if str(user).strip()}


def normalize_team_name(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def merge_metadata(desired: Optional[dict[str, Any]], current: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Combine desired metadata with the current state. The current state wins on conflicts."""
    if current is None:
        return dict(desired) if desired is not None else None
    if desired is None:
        return dict(current)
    return {**desired, **current}


class TeamService(GitHubService):
    def read_team(self, group: Group) -> Optional[Team]:
        """Current state of the team backing `group`, from the predictive cache if possible.

        Returns None if the team does not exist. A missing team is not cached.
        """
        slug = group.cn.lower()
        teams = self.run_cache.teams_for(self.org_signature)
        if slug not in teams:
            entry = self._read_team_uncached(group, slug)
            if entry is None:
                return None
            teams[slug] = entry
        return teams[slug].value

    def from_predictive_cache(self, group: Group) -> bool:
        self.read_team(group)
        entry = self.run_cache.teams_for(self.org_signature).get(group.cn.lower())
        return entry is not None and entry.from_predictive_cache

    def invalidate_predictive_cache(self, group: Group) -> None:
        """Drop predictive knowledge of the team and re-read it from the API.

        Does nothing when the current answer already came from the API.
        """
        if not self.from_predictive_cache(group):
            return

        slug = group.cn.lower()
        self.predictive_cache.invalidate(f"cn={slug},{self.ou}")
        del self.run_cache.teams_for(self.org_signature)[slug]
        self.read_team(group)

    def _read_team_uncached(self, group: Group, slug: str) -> Optional[CacheEntry[Team]]:
        dn = f"cn={slug},{self.ou}"

        cached_members = self.predictive_cache.members(dn)
        if cached_members is not None:
            logger.debug(f"Loading GitHub team {self.identifier}:{self.org}/{slug} from cache")
            team = Team(
                team_id=PREDICTIVE_TEAM_ID,
                team_name=slug,
                members=cached_members,
                ou=self.ou,
                metadata=merge_metadata(group.metadata, self.predictive_cache.metadata(dn)),
            )
            return CacheEntry(value=team, provenance=Provenance.predictive)

        logger.debug(f"Loading GitHub team {self.identifier}:{self.org}/{slug}")
        data = self.graphql_team_data(slug)
        if data is None:
            logger.warning(f"Team {slug} does not exist in {self.org}. If applied, the team will be created.")
            return None

        live_metadata: dict[str, Any] = {"parent_team_name": data.parent_team_name}
        # GitHub has no place for undeclared keys, so maintainers only count when they are managed
        if group.metadata_fetch_if_exists("team_maintainers") is not None:
            live_metadata["team_maintainers"] = sorted(data.maintainers)

        team = Team(
            team_id=data.team_id,
            team_name=slug,
            members=data.members,
            ou=self.ou,
            metadata=merge_metadata(group.metadata, live_metadata),
        )
        return CacheEntry(value=team, provenance=Provenance.live)

    def graphql_team_data(self, team_slug: str) -> Optional[TeamData]:
        """Members, maintainers, database id and parent of a team. None if the team does not exist."""
        found = True
        team_id: Optional[int] = None
        parent_team_name: Optional[str] = None

        def extract(data: dict) -> tuple[list[dict], Optional[str]]:
            nonlocal found, team_id, parent_team_name
            team = require(data, "data.organization", "team query").get("team")
            if team is None:
                found = False
                return [], None
            team_id = require(team, "databaseId", "team query")
            parent_team_name = jp.search("parentTeam.slug", team)
            edges = require(team, "members.edges", "team query")
            return edges, (edges[-1].get("cursor") if edges else None)

        result = TeamData(team_id=NEW_TEAM_ID)
        for edges in self.graphql_paginate(TEAM_QUERY, {"org": self.org, "slug": team_slug}, extract):
            for edge in edges:
                login = require(edge, "node.login", "team member edge").lower()
                result.members.append(login)
                if edge.get("role") == "MAINTAINER":
                    result.maintainers.add(login)

        if not found or team_id is None:
            return None
        result.team_id = team_id
        result.parent_team_name = parent_team_name
        return result

    def sync_team(self, desired: Group, current: Team) -> bool:
        """Sync parent team, members and maintainers of an existing team. Returns True if anything changed."""
        desired_metadata = desired.metadata or {}
        current_metadata = current.metadata or {}
        changed_parent_team = self._sync_parent_team(desired_metadata, current_metadata, current)

        desired_members = desired.member_strings_insensitive
        current_members = current.member_strings_insensitive
        added_members = [u for u in sorted(desired_members - current_members) if self.add_user_to_team(u, current)]
        removed_members = [u for u in sorted(current_members - desired_members) if self.remove_user_from_team(u, current)]

        members_after = (current_members - set(removed_members)) | set(added_members)
        promoted = self._sync_maintainers(desired_metadata, current_metadata, current, members_after)

        logger.debug(
            f"sync_team({current.team_name}={current.team_id}): Added {len(added_members)}, "
            f"removed {len(removed_members)}, promoted {len(promoted)}"
        )
        return bool(added_members or removed_members or promoted or changed_parent_team)

    def _sync_parent_team(self, desired_metadata: dict, current_metadata: dict, current: Team) -> bool:
        desired_parent = desired_metadata.get("parent_team_name")
        current_parent = current_metadata.get("parent_team_name")
        if normalize_team_name(desired_parent) == normalize_team_name(current_parent):
            return False
        # Removing a parent team is not supported yet, only reported
        if desired_parent is None:
            logger.debug(f"sync_team(team={current.team_name}): IGNORING parent team removal of {current_parent}")
            return False

        logger.debug(
            f"sync_team({current.team_name}={current.team_id}): Parent team change found - "
            f"From {current_parent or 'No Parent Team'} to {desired_parent}"
        )
        parent = self.team_by_name(desired_parent)
        if parent is None:
            logger.critical(f"Parent team {desired_parent} of {current.team_name} does not exist in {self.org}")
            raise ProtocolError(f"Parent team {desired_parent} does not exist in {self.org}")
        return self.update_team(current, parent_team_id=parent["id"])

    def _sync_maintainers(self, desired_metadata: dict, current_metadata: dict, current: Team, members: set[str]) -> list[str]:
        if desired_metadata.get("team_maintainers") is None:
            return []
        desired_maintainers = parse_maintainers(desired_metadata["team_maintainers"])
        current_maintainers = parse_maintainers(current_metadata.get("team_maintainers"))

        for user in sorted(current_maintainers - desired_maintainers):
            logger.debug(f"sync_team(team={current.team_name}): IGNORING maintainer removal of {user}")

        promoted = []
        for user in sorted(desired_maintainers - current_maintainers):
            if user not in members:
                logger.warning(f"Not promoting {user} to maintainer of {current.team_name}: not a member of the team")
                continue
            if self.promote_to_maintainer(user, current):
                promoted.append(user)
        return promoted

    def create_team(self, group: Group) -> bool:
        team_name = group.cn.lower()
        payload: dict[str, Any] = {"name": team_name, "privacy": "closed"}

        parent_team_name = group.metadata_fetch_if_exists("parent_team_name")
        if parent_team_name is not None:
            parent = self.graphql_team_data(parent_team_name)
            if parent is None:
                logger.critical(f"create_team(team={team_name}): parent team {parent_team_name} does not exist")
                raise ProtocolError(f"Parent team {parent_team_name} does not exist in {self.org}")
            payload["parent_team_id"] = parent.team_id
            logger.debug(f"create_team(team={team_name}) Parent team {parent_team_name} with id {parent.team_id} found")

        logger.debug(f"create_team(team={team_name})")
        return self.rest_mutate("POST", f"/orgs/{self.org}/teams", json=payload) is not None

    def update_team(self, team: Team, parent_team_id: Optional[int] = None) -> bool:
        logger.debug(f"update_team(team={team.team_name})")
        payload = {"name": team.team_name, "privacy": "closed", "parent_team_id": parent_team_id}
        return self.rest_mutate("PATCH", f"/teams/{team.team_id}", json=payload) is not None

    def team_by_name(self, team_name: str) -> Optional[dict[str, Any]]:
        return self.rest_read(f"/orgs/{self.org}/teams/{team_name.lower()}")

    def validate_team_id_and_slug(self, team_id: int, team_slug: str) -> None:
        """Make sure a team id still belongs to the expected slug.

        Raises:
            ProtocolError: on a mismatch or when the team id is unknown to GitHub.
        """
        if team_id == NEW_TEAM_ID:
            return

        slugs = self.run_cache.team_slugs_for(self.org_signature)
        if team_id not in slugs:
            logger.debug(f"validate_team_id_and_slug({team_id}, {team_slug!r})")
            team_data = self.rest_read(f"/teams/{team_id}")
            if team_data is None:
                raise ProtocolError(f"Team id {team_id} does not exist (expected {team_slug!r})")
            slugs[team_id] = team_data.get("slug")
        if slugs[team_id] != team_slug:
            raise ProtocolError(f"Team id mismatch: team_id={team_id} expected={team_slug!r} got={slugs[team_id]!r}")

    def add_user_to_team(self, user: str, team: Team) -> bool:
        if user.lower() not in self.org_members():
            return False
        logger.debug(f"{self.identifier} add_user_to_team(user={user}, org={self.org}, team_id={team.team_id})")
        return self._put_team_membership(user, team, "member")

    def remove_user_from_team(self, user: str, team: Team) -> bool:
        if user.lower() not in self.org_members():
            return False
        logger.debug(f"{self.identifier} remove_user_from_team(user={user}, org={self.org}, team_id={team.team_id})")
        self.validate_team_id_and_slug(team.team_id, team.team_name)
        return self.rest_mutate("DELETE", f"/teams/{team.team_id}/memberships/{user}") is not None

    def promote_to_maintainer(self, user: str, team: Team) -> bool:
        logger.debug(f"{self.identifier} promote_to_maintainer(user={user}, org={self.org}, team_id={team.team_id})")
        return self._put_team_membership(user, team, "maintainer")

    def _put_team_membership(self, user: str, team: Team, role: str) -> bool:
        self.validate_team_id_and_slug(team.team_id, team.team_name)
        response = self.rest_mutate("PUT", f"/teams/{team.team_id}/memberships/{user}", json={"role": role})
        if response is None:
            return False
        return response_json(response).get("state") in ("active", "pending")
