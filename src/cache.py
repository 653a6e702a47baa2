"""Caches used during one reconciliation run.

`PredictiveCache` holds membership snapshots from a previous run, keyed by distinguished
name. It lets a run skip API calls when nothing is expected to change. Entries can be
invalidated, after which they are never served again.

`RunCache` holds the answers obtained during the current run (organization members,
pending invitations, teams), keyed by a signature of the GitHub instance and organization
so that several controllers for the same organization share them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, Iterable, Mapping, Optional, TypeVar

import config

if TYPE_CHECKING:
    from entities.github import OrgRole, Team

logger = config.get_logger(service="cache")

T = TypeVar("T")


class Provenance(str, Enum):
    predictive = "predictive"
    live = "live"


@dataclass
class CacheEntry(Generic[T]):
    value: T
    provenance: Provenance

    @property
    def from_predictive_cache(self) -> bool:
        return self.provenance is Provenance.predictive


@dataclass(frozen=True)
class Snapshot:
    """Membership (and optional metadata) of one group as recorded by a previous run."""

    members: frozenset[str]
    metadata: Optional[dict[str, Any]] = None


class PredictiveCache:
    """Read-through snapshot store populated by an external collaborator.

    Lookups are case-insensitive on the distinguished name and return None when there is
    no snapshot or when the snapshot has been invalidated.
    """

    def __init__(self, snapshots: Optional[Mapping[str, Snapshot]] = None, invalid: Iterable[str] = ()) -> None:
        self._snapshots: dict[str, Snapshot] = {dn.lower(): snapshot for dn, snapshot in (snapshots or {}).items()}
        self._invalid: set[str] = {dn.lower() for dn in invalid}

    @classmethod
    def from_members(
        cls,
        members: Mapping[str, Iterable[str]],
        metadata: Optional[Mapping[str, dict[str, Any]]] = None,
        invalid: Iterable[str] = (),
    ) -> PredictiveCache:
        metadata = metadata or {}
        snapshots = {
            dn: Snapshot(members=frozenset(dn_members), metadata=metadata.get(dn)) for dn, dn_members in members.items()
        }
        return cls(snapshots, invalid)

    def members(self, dn: str) -> Optional[set[str]]:
        snapshot = self._lookup(dn)
        return None if snapshot is None else set(snapshot.members)

    def metadata(self, dn: str) -> Optional[dict[str, Any]]:
        snapshot = self._lookup(dn)
        if snapshot is None or snapshot.metadata is None:
            return None
        return dict(snapshot.metadata)

    def invalidate(self, dn: str) -> None:
        logger.debug(f"Invalidating predictive cache entry for {dn}")
        self._invalid.add(dn.lower())

    def is_invalid(self, dn: str) -> bool:
        return dn.lower() in self._invalid

    @property
    def invalid(self) -> frozenset[str]:
        return frozenset(self._invalid)

    def __contains__(self, dn: object) -> bool:
        return isinstance(dn, str) and self._lookup(dn) is not None

    def _lookup(self, dn: str) -> Optional[Snapshot]:
        key = dn.lower()
        if key in self._invalid:
            return None
        return self._snapshots.get(key)


@dataclass
class RunCache:
    """Current-truth answers shared by every service talking to the same organization."""

    org_members: dict[str, CacheEntry[dict[str, OrgRole]]] = field(default_factory=dict)
    pending_members: dict[str, set[str]] = field(default_factory=dict)
    enterprise: dict[str, bool] = field(default_factory=dict)
    teams: dict[str, dict[str, CacheEntry[Team]]] = field(default_factory=dict)
    team_slugs_by_id: dict[str, dict[int, str]] = field(default_factory=dict)

    def teams_for(self, signature: str) -> dict[str, CacheEntry[Team]]:
        return self.teams.setdefault(signature, {})

    def team_slugs_for(self, signature: str) -> dict[int, str]:
        return self.team_slugs_by_id.setdefault(signature, {})
