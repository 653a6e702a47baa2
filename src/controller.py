from __future__ import annotations

from typing import AbstractSet, Any, Generic, Optional, Type, TypeVar

import config
from cache import PredictiveCache, RunCache
from desired_state import DesiredState
from entities.github import Action, Group

logger = config.get_logger(service="controller")

C = TypeVar("C", bound=config.GroupConfig)


class BaseController(Generic[C]):
    """Reconciles every group configured under one group name of the entitlements configuration."""

    config_model: Type[C]

    def __init__(  # noqa: PLR0913
        self,
        group_name: str,
        group_config: dict[str, Any],
        desired_state: DesiredState,
        *,
        run_cache: Optional[RunCache] = None,
        predictive_cache: Optional[PredictiveCache] = None,
        settings: Optional[config.Config] = None,
    ) -> None:
        self.group_name = group_name
        self.config: C = self.validate_config(group_name, group_config)
        self.desired_state = desired_state
        self.run_cache = run_cache if run_cache is not None else RunCache()
        self.predictive_cache = predictive_cache if predictive_cache is not None else PredictiveCache()
        self.settings = settings
        self.actions: list[Action] = []

    @classmethod
    def validate_config(cls, group_name: str, data: dict[str, Any]) -> C:
        return config.validate_group_config(cls.config_model, group_name, data)

    def read_desired(self, dn: str) -> Group:
        """A private copy of a desired group, safe to mutate."""
        return self.desired_state.read(dn).copy()

    def prefetch(self) -> None:
        raise NotImplementedError

    def calculate(self) -> list[Action]:
        raise NotImplementedError

    def apply(self, action: Action) -> bool:
        raise NotImplementedError

    def print_differences(
        self,
        added: list[Action],
        removed: list[Action],
        changed: list[Action],
        ignored_users: AbstractSet[str] = frozenset(),
    ) -> None:
        for kind, actions in (("ADD", added), ("REMOVE", removed), ("CHANGE", changed)):
            for action in actions:
                steps = [
                    f"{step.operation} {step.subject}" + (f" (moved to {step.moved_to.value})" if step.moved_to else "")
                    for step in action.implementation
                ]
                logger.info(
                    f"{kind} {action.dn} in {self.group_name}",
                    extra={
                        "existing": sorted(action.existing.member_strings) if action.existing else None,
                        "updated": sorted(action.updated.member_strings) if action.updated else None,
                        "implementation": steps,
                        "ignored_users": sorted(ignored_users),
                    },
                )
