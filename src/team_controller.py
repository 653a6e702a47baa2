from __future__ import annotations

from typing import Any, Optional

import config
from cache import PredictiveCache, RunCache
from controller import BaseController
from desired_state import DesiredState
from entities.github import Action
from errors import InvalidOperationError
from team_provider import TeamProvider

logger = config.get_logger(service="team_controller")


class TeamController(BaseController[config.TeamGroupConfig]):
    config_model = config.TeamGroupConfig

    def __init__(  # noqa: PLR0913
        self,
        group_name: str,
        group_config: dict[str, Any],
        desired_state: DesiredState,
        *,
        run_cache: Optional[RunCache] = None,
        predictive_cache: Optional[PredictiveCache] = None,
        settings: Optional[config.Config] = None,
        provider: Optional[TeamProvider] = None,
    ) -> None:
        super().__init__(
            group_name,
            group_config,
            desired_state,
            run_cache=run_cache,
            predictive_cache=predictive_cache,
            settings=settings,
        )
        self.provider = provider or TeamProvider.from_config(self.config, self.run_cache, self.predictive_cache, settings)

    def prefetch(self) -> None:
        for dn in self.desired_state.read_all(self.group_name, self.config):
            self.provider.read(self.read_desired(dn))

    def calculate(self) -> list[Action]:
        added = []
        changed = []
        for dn in self.desired_state.read_all(self.group_name, self.config):
            group = self.read_desired(dn)

            # Organization non-members (pending invitees included) are left alone, so that a team
            # never grants organization membership on its own
            ignored_users = self.provider.auto_generate_ignored_users(group)

            diff = self.provider.diff(group, ignored_users)
            if diff.is_empty():
                logger.debug(f"UNCHANGED: No GitHub team changes for {self.group_name}:{dn}")
                continue

            action = Action(
                dn=dn,
                existing=self.provider.read(group),
                updated=group,
                ou=self.group_name,
                ignored_users=ignored_users,
            )
            if diff.metadata and diff.metadata.get("create_team"):
                added.append(action)
            else:
                changed.append(action)

        self.print_differences(added=added, removed=[], changed=changed)
        self.actions = added + changed
        return list(self.actions)

    def apply(self, action: Action) -> bool:
        if action.updated is None:
            logger.critical(f"{action.dn}: removing a GitHub team is not supported")
            raise InvalidOperationError(f"Invalid Operation on {action.dn}")

        if self.provider.change_ignored(action):
            logger.debug(f"SKIP: GitHub team {action.dn} only changes organization non-members or pending members")
            return False

        if self.provider.commit(action.updated):
            logger.debug(f"APPLY: Updating GitHub team {action.dn}")
            return True

        logger.warning(f"DID NOT APPLY: Changes not needed to {action.dn}")
        logger.debug(f"Old: {action.existing!r}")
        logger.debug(f"New: {action.updated!r}")
        return False
