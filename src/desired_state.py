"""Desired state as handed over by the entitlements engine.

Groups are computed elsewhere. Controllers only need to list the groups configured under
a group name and read each of them.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Protocol

import config
from entities.github import Group
from errors import ConfigurationError

logger = config.get_logger(service="desired_state")


class DesiredState(Protocol):
    def read_all(self, group_name: str, group_config: config.GroupConfig) -> list[str]:
        """Distinguished names of every group defined for `group_name`."""
        ...

    def read(self, dn: str) -> Group:
        ...


class StaticDesiredState:
    """In-memory desired state, for callers that already computed their groups."""

    def __init__(self, groups: Mapping[str, Iterable[Group]]) -> None:
        self._dns_by_group_name: dict[str, list[str]] = {}
        self._groups: dict[str, Group] = {}
        for group_name, group_list in groups.items():
            dns = self._dns_by_group_name.setdefault(group_name, [])
            for group in group_list:
                dns.append(group.dn)
                self._groups[group.dn.lower()] = group

    def read_all(self, group_name: str, group_config: config.GroupConfig) -> list[str]:
        return list(self._dns_by_group_name.get(group_name, []))

    def read(self, dn: str) -> Group:
        group = self._groups.get(dn.lower())
        if group is None:
            logger.critical(f"No group definition for {dn}")
            raise ConfigurationError(f"No group definition for {dn}")
        return group
