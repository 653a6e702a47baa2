"""Transport and read side of the GitHub API shared by the organization and team services.

Reads go through GraphQL with cursor pagination. Every POST is retried on server errors
with exponential backoff. Organization membership and pending invitations are cached per
run in a `RunCache` keyed by `org_signature`, and organization membership can be served
from the predictive cache.
"""

from __future__ import annotations

import datetime
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, TypeVar
from urllib.parse import urlparse

import httpx
import jmespath as jp

import config
from cache import CacheEntry, PredictiveCache, Provenance, RunCache
from entities.github import ROLES, OrgRole, role_dn
from errors import GraphQLQueryError, MutationRejected, PaginationLimitExceeded, ProtocolError, TransientNetworkError

logger = config.get_logger(service="github_service")

T = TypeVar("T")

ORG_MEMBERS_QUERY = """
query($org: String!, $first: Int!, $after: String) {
  organization(login: $org) {
    membersWithRole(first: $first, after: $after) {
      edges { node { login } role }
      pageInfo { endCursor }
    }
  }
}
"""

PENDING_MEMBERS_QUERY = """
query($org: String!, $first: Int!, $after: String) {
  organization(login: $org) {
    pendingMembers(first: $first, after: $after) {
      edges { node { login } }
      pageInfo { endCursor }
    }
  }
}
"""


@dataclass
class GraphQLResponse:
    code: int
    data: Optional[dict[str, Any]]


def retry_while(
    fn: Callable[[], T],
    condition: Callable[[T], bool],
    retry_period_seconds: float = 1,
    max_attempts: int = 3,
    exponential: bool = False,
) -> T:
    """Call `fn` again while `condition` holds for its result, at most `max_attempts` times.

    The last result is returned even if the condition still holds.
    """
    for attempt in range(1, max_attempts + 1):
        response = fn()
        if not condition(response) or attempt >= max_attempts:
            return response
        delay = retry_period_seconds * (2 ** (attempt - 1)) if exponential else retry_period_seconds
        logger.warning(f"Attempt {attempt} of {max_attempts} failed. Will retry in {delay}s.")
        time.sleep(delay)
    raise ValueError("max_attempts must be at least 1")


def require(data: Any, expression: str, what: str) -> Any:
    """jmespath lookup that treats a missing object as a protocol error."""
    value = jp.search(expression, data)
    if value is None:
        logger.critical(f"Unexpected response structure for {what}: {expression} is missing")
        raise ProtocolError(f"Unexpected response structure for {what}: {expression} is missing")
    return value


def response_json(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class GitHubService:
    def __init__(  # noqa: PLR0913
        self,
        *,
        org: str,
        token: str,
        ou: str,
        addr: Optional[str] = None,
        ignore_not_found: bool = False,
        run_cache: Optional[RunCache] = None,
        predictive_cache: Optional[PredictiveCache] = None,
        settings: Optional[config.Config] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        """Nothing is fetched until the first read.

        Args:
            org: Organization login.
            token: Access token for the GitHub API.
            ou: Base OU used to build distinguished names of roles and teams.
            addr: API endpoint of a GitHub Enterprise Server (defaults to github.com).
            ignore_not_found: Treat a 404 on a mutation as "no change" instead of a failure.
            run_cache: Per-run cache shared with other services of the same run.
            predictive_cache: Snapshots from a previous run.
            settings: Transport settings, read from the environment when omitted.
            http_client: Preconfigured client, mostly for tests.
        """
        self.org = org
        self.token = token
        self.ou = ou
        self.addr = addr
        self.ignore_not_found = ignore_not_found
        self.settings = settings or config.get_config()
        self.run_cache = run_cache if run_cache is not None else RunCache()
        self.predictive_cache = predictive_cache if predictive_cache is not None else PredictiveCache()
        self._http = http_client

    @property
    def identifier(self) -> str:
        if self.addr is None:
            return "github.com"
        return urlparse(self.addr).hostname or self.addr

    @property
    def api_endpoint(self) -> str:
        return (self.addr or self.settings.github_api_endpoint).rstrip("/")

    @property
    def org_signature(self) -> str:
        return f"{self.addr or ''}|{self.org}"

    @property
    def http(self) -> httpx.Client:
        if self._http is None:
            logger.debug(f"Setting up GitHub API connection to {self.api_endpoint}")
            self._http = httpx.Client(
                base_url=self.api_endpoint,
                headers={
                    "Authorization": f"bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                },
                timeout=self.settings.http_timeout_seconds,
            )
        return self._http

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None

    # -----------------Organization members-----------------#

    def org_members(self) -> dict[str, OrgRole]:
        """Lower-cased login -> role for every member of the organization."""
        entry = self.run_cache.org_members.get(self.org_signature)
        if entry is None:
            data, provenance = self._members_and_roles_from_graphql_or_cache()
            members: dict[str, OrgRole] = {}
            for username, graphql_role in data.items():
                try:
                    members[username] = OrgRole.from_graphql(graphql_role)
                except ValueError as e:
                    logger.critical(f"Abort: {e} for {username} in {self.org}")
                    raise ProtocolError(f"Unknown role {graphql_role!r} for {username} in {self.org}") from e

            counts = {role.value: sum(1 for r in members.values() if r is role) for role in ROLES}
            logger.debug(f"Currently {self.org} has {counts}", extra={"provenance": provenance})
            entry = CacheEntry(value=members, provenance=provenance)
            self.run_cache.org_members[self.org_signature] = entry
        return entry.value

    def org_members_from_predictive_cache(self) -> bool:
        self.org_members()
        return self.run_cache.org_members[self.org_signature].from_predictive_cache

    def invalidate_org_members_predictive_cache(self) -> None:
        """Drop predictive knowledge of the organization and re-read it from the API.

        Does nothing when the current answer already came from the API.
        """
        if not self.org_members_from_predictive_cache():
            return

        logger.debug(f"Invalidating cache entries for cn=({'|'.join(r.value for r in ROLES)}),{self.ou}")
        for role in ROLES:
            self.predictive_cache.invalidate(role_dn(role, self.ou))
        del self.run_cache.org_members[self.org_signature]
        self.org_members()

    def pending_members(self) -> set[str]:
        """Lower-cased logins with an invitation that has not been accepted yet."""
        if self.org_signature not in self.run_cache.pending_members:
            # GitHub Enterprise Server has no organization invitations
            pending = set() if self.enterprise() else self._pending_members_from_graphql()
            logger.debug(f"Currently {self.org} has {len(pending)} pending member(s)")
            self.run_cache.pending_members[self.org_signature] = pending
        return self.run_cache.pending_members[self.org_signature]

    def enterprise(self) -> bool:
        if self.identifier not in self.run_cache.enterprise:
            meta = self.rest_read("/meta") or {}
            self.run_cache.enterprise[self.identifier] = "installed_version" in meta
        return self.run_cache.enterprise[self.identifier]

    def _members_and_roles_from_graphql_or_cache(self) -> tuple[dict[str, str], Provenance]:
        cached = {role: self.predictive_cache.members(role_dn(role, self.ou)) for role in ROLES}

        # Both admins and members have to be known, otherwise ask the API
        if cached[OrgRole.admin] is None or cached[OrgRole.member] is None:
            return self._members_and_roles_from_graphql(), Provenance.live

        logger.debug(f"Loading organization members and roles for {self.org} from cache")
        result: dict[str, str] = {}
        for role, members in cached.items():
            for uid in members or ():
                result[uid.lower()] = role.graphql_value
        return result, Provenance.predictive

    def _members_and_roles_from_graphql(self) -> dict[str, str]:
        logger.debug(f"Loading organization members and roles for {self.org}")

        def extract(data: dict) -> tuple[list[dict], Optional[str]]:
            connection = require(data, "data.organization.membersWithRole", "membersWithRole")
            return require(connection, "edges", "membersWithRole"), jp.search("pageInfo.endCursor", connection)

        result: dict[str, str] = {}
        for edges in self.graphql_paginate(ORG_MEMBERS_QUERY, {"org": self.org}, extract):
            for edge in edges:
                result[require(edge, "node.login", "membersWithRole edge").lower()] = require(edge, "role", "membersWithRole edge")
        return result

    def _pending_members_from_graphql(self) -> set[str]:
        # Pending invitations are state rather than entitlements, so there is no predictive cache for them

        def extract(data: dict) -> tuple[list[dict], Optional[str]]:
            connection = require(data, "data.organization.pendingMembers", "pendingMembers")
            return require(connection, "edges", "pendingMembers"), jp.search("pageInfo.endCursor", connection)

        result: set[str] = set()
        for edges in self.graphql_paginate(PENDING_MEMBERS_QUERY, {"org": self.org}, extract):
            result.update(require(edge, "node.login", "pendingMembers edge").lower() for edge in edges)
        return result

    # -----------------GraphQL transport-----------------#

    def graphql_paginate(
        self,
        query: str,
        variables: dict[str, Any],
        extract: Callable[[dict], tuple[list[dict], Optional[str]]],
    ) -> Iterator[list[dict]]:
        """Yield the edges of each page of a cursor-paginated connection.

        `extract` returns the edges of a page and the cursor to continue after. Fetching
        stops on an empty or short page, or when no cursor is returned.

        Raises:
            GraphQLQueryError: if a page could not be fetched.
            PaginationLimitExceeded: if the connection does not end within `max_graphql_pages`.
        """
        page_size = self.settings.max_graphql_results
        cursor: Optional[str] = None
        started = datetime.datetime.now()

        for _ in range(self.settings.max_graphql_pages):
            response = self.graphql_http_post(query, {**variables, "first": page_size, "after": cursor})
            if response.code != 200:
                logger.critical(f"Abort due to GraphQL failure on {query!r}", extra={"variables": variables})
                raise GraphQLQueryError(f"GraphQL query failure (HTTP {response.code})")

            edges, cursor = extract(response.data or {})
            if not edges:
                return
            yield edges
            if not (cursor and len(edges) == page_size):
                logger.debug(f"Pagination finished in {datetime.datetime.now() - started}")
                return

        raise PaginationLimitExceeded(f"Query did not finish within {self.settings.max_graphql_pages} pages: {query!r}")

    def graphql_http_post(self, query: str, variables: Optional[dict[str, Any]] = None) -> GraphQLResponse:
        """POST a GraphQL query, retrying server errors with exponential backoff.

        Anything below 500 is returned right away. After the last attempt the last failure
        is returned rather than raised.
        """
        max_retries = self.settings.max_graphql_retries
        for try_number in range(1, max_retries + 1):
            result = self._graphql_http_post_real(query, variables or {})
            if result.code < 500:
                return result
            if try_number >= max_retries:
                logger.error(f"Query still failing after {max_retries} tries. Giving up.")
                return result
            logger.warning(f"GraphQL failed on try {try_number} of {max_retries}. Will retry.")
            time.sleep(self.settings.wait_between_graphql_retries * (2 ** (try_number - 1)))
        raise ValueError("max_graphql_retries must be at least 1")

    def _graphql_http_post_real(self, query: str, variables: dict[str, Any]) -> GraphQLResponse:
        url = f"{self.api_endpoint}/graphql"
        try:
            response = self.http.post("/graphql", json={"query": query, "variables": variables})
        except httpx.HTTPError as e:
            logger.error(f"Caught {type(e).__name__} POSTing to {url}: {e}")
            return GraphQLResponse(code=500, data=None)

        if response.status_code != 200:
            logger.error(f"Got HTTP {response.status_code} POSTing to {url}", extra={"body": response.text})
            return GraphQLResponse(code=response.status_code, data={"body": response.text})

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"{type(e).__name__} {e}: {response.text!r}")
            return GraphQLResponse(code=500, data={"body": response.text})

        if "errors" in data:
            logger.error(f"Errors reported: {data['errors']!r}")
            return GraphQLResponse(code=500, data=data)
        return GraphQLResponse(code=response.status_code, data=data)

    # -----------------REST transport-----------------#

    def _send(self, method: str, path: str, json: Optional[dict[str, Any]] = None) -> Optional[httpx.Response]:
        try:
            return self.http.request(method, path, json=json)
        except httpx.TransportError as e:
            logger.warning(f"Caught {type(e).__name__} on {method} {path}: {e}")
            return None

    def rest_read(self, path: str) -> Optional[dict[str, Any]]:
        """GET a REST resource, retrying server and network errors.

        Returns None when the resource does not exist.
        """
        response = retry_while(
            lambda: self._send("GET", path),
            condition=lambda r: r is None or r.status_code >= 500,
            retry_period_seconds=self.settings.rest_retry_sleep,
            max_attempts=self.settings.rest_retries,
        )
        if response is None or response.status_code >= 500:
            status = "network error" if response is None else f"HTTP {response.status_code}"
            logger.error(f"GET {path} still failing after {self.settings.rest_retries} tries ({status})")
            raise TransientNetworkError(f"GET {path} failed: {status}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.critical(f"GET {path} returned HTTP {response.status_code}: {response.text}")
            raise ProtocolError(f"GET {path} returned HTTP {response.status_code}")
        return response_json(response)

    def rest_mutate(self, method: str, path: str, json: Optional[dict[str, Any]] = None) -> Optional[httpx.Response]:
        """Send a mutation once. Mutations are never retried.

        Returns None for a tolerated 404 (`ignore_not_found`).

        Raises:
            MutationRejected: if GitHub declined the call.
            TransientNetworkError: if the request did not reach GitHub.
        """
        response = self._send(method, path, json)
        if response is None:
            raise TransientNetworkError(f"{method} {path} did not reach {self.identifier}")
        if response.status_code == 404 and self.ignore_not_found:
            logger.warning(f"{method} {path} returned 404, ignored because ignore_not_found is set")
            return None
        if response.status_code >= 400:
            message = response_json(response).get("message") or response.text
            logger.error(f"{method} {path} failed with HTTP {response.status_code}: {message}")
            raise MutationRejected(f"{method} {path} failed with HTTP {response.status_code}: {message}", response.status_code)
        return response
