"""Run orchestration: prefetch, calculate and apply every controller of one run.

Controllers of one run share a `RunCache`, so organization membership and pending
invitations are read once per organization. Organization controllers run before team
controllers, so that team changes see organization membership after it was reconciled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

import config
from cache import PredictiveCache, RunCache
from controller import BaseController
from desired_state import DesiredState
from entities.github import Action
from errors import ACTION_ERRORS, ConfigurationError
from org_controller import OrgController
from team_controller import TeamController

logger = config.get_logger(service="reconciler")

CONTROLLER_TYPES: dict[str, type[BaseController]] = {
    "github_org": OrgController,
    "github_team": TeamController,
}

# Lower runs first
CONTROLLER_PRIORITY = {OrgController: 30, TeamController: 40}


@dataclass
class ReconcileResult:
    """Result of a reconciliation run."""

    start_time: datetime
    end_time: Optional[datetime] = None
    success: bool = False
    apply_changes: bool = True

    controllers_processed: int = 0
    actions_planned: int = 0
    actions_applied: int = 0
    actions_unchanged: int = 0
    errors: list[str] = field(default_factory=list)

    def log_start(self) -> None:
        logger.info(
            "Reconciliation started",
            extra={
                "operation": "reconcile_start",
                "start_time": self.start_time.isoformat(),
                "apply_changes": self.apply_changes,
            },
        )

    def log_completion(self) -> None:
        duration_ms = None
        if self.end_time:
            duration_ms = int((self.end_time - self.start_time).total_seconds() * 1000)

        logger.info(
            "Reconciliation completed",
            extra={
                "operation": "reconcile_complete",
                "start_time": self.start_time.isoformat(),
                "end_time": self.end_time.isoformat() if self.end_time else None,
                "duration_ms": duration_ms,
                "success": self.success,
                "controllers_processed": self.controllers_processed,
                "actions_planned": self.actions_planned,
                "actions_applied": self.actions_applied,
                "actions_unchanged": self.actions_unchanged,
                "error_count": len(self.errors),
            },
        )


def build_controllers(
    groups: Mapping[str, dict[str, Any]],
    desired_state: DesiredState,
    predictive_cache: Optional[PredictiveCache] = None,
    settings: Optional[config.Config] = None,
) -> list[BaseController]:
    """Controllers for every configured group, sharing one run cache, in priority order.

    Each configuration bag names its controller in `type` (`github_org` or `github_team`).
    """
    run_cache = RunCache()
    predictive_cache = predictive_cache if predictive_cache is not None else PredictiveCache()

    controllers: list[BaseController] = []
    for group_name, data in groups.items():
        controller_type = CONTROLLER_TYPES.get(data.get("type", ""))
        if controller_type is None:
            logger.critical(f"Unknown controller type {data.get('type')!r} for {group_name!r}")
            raise ConfigurationError(
                f"Unknown type {data.get('type')!r} for group {group_name!r}. Supported values: {', '.join(CONTROLLER_TYPES)}"
            )
        controllers.append(
            controller_type(
                group_name,
                {k: v for k, v in data.items() if k != "type"},
                desired_state,
                run_cache=run_cache,
                predictive_cache=predictive_cache,
                settings=settings,
            )
        )

    return sorted(controllers, key=lambda c: CONTROLLER_PRIORITY.get(type(c), 100))


def _finalize_result(result: ReconcileResult) -> ReconcileResult:
    result.success = len(result.errors) == 0
    result.end_time = datetime.now(timezone.utc)
    result.log_completion()
    return result


def reconcile(controllers: Sequence[BaseController], apply_changes: bool = True) -> ReconcileResult:
    """Plan every controller and, unless this is a dry run, apply the planned actions.

    Configuration and protocol errors abort the run. A rejected mutation or a network
    failure only fails its own action and is reported in the result.
    """
    result = ReconcileResult(start_time=datetime.now(timezone.utc), apply_changes=apply_changes)
    result.log_start()

    for controller in controllers:
        controller.prefetch()

    planned: list[tuple[BaseController, Action]] = []
    for controller in controllers:
        actions = controller.calculate()
        result.controllers_processed += 1
        planned.extend((controller, action) for action in actions)
    result.actions_planned = len(planned)
    logger.info(f"Computed {len(planned)} action(s) across {len(controllers)} controller(s)")

    if not apply_changes:
        logger.info("Dry run, not applying any changes")
        return _finalize_result(result)

    for controller, action in planned:
        try:
            applied = controller.apply(action)
        except ACTION_ERRORS as e:
            logger.error(f"Failed to apply {action.dn} in {controller.group_name}: {e}")
            result.errors.append(f"{controller.group_name}:{action.dn}: {e}")
            continue
        if applied:
            result.actions_applied += 1
        else:
            result.actions_unchanged += 1

    return _finalize_result(result)
