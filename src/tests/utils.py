import json
from typing import Iterable, Optional

import httpx

ENDPOINT = "https://github.fake/api/v3"
ORG = "kittensinc"
OU = "ou=kittensinc,ou=GitHub,dc=github,dc=fake"
SIGNATURE = f"{ENDPOINT}|{ORG}"


def members_page(members: dict[str, str], cursor: Optional[str] = "Y3Vyc29yOnYyOpHOAAs=") -> dict:
    """membersWithRole page. `members` maps login to the GraphQL role value."""
    return {
        "data": {
            "organization": {
                "membersWithRole": {
                    "edges": [{"node": {"login": login}, "role": role} for login, role in members.items()],
                    "pageInfo": {"endCursor": cursor if members else None},
                }
            }
        }
    }


def pending_page(logins: Iterable[str], cursor: Optional[str] = "cGVuZGluZw==") -> dict:
    edges = [{"node": {"login": login}} for login in logins]
    return {
        "data": {
            "organization": {
                "pendingMembers": {"edges": edges, "pageInfo": {"endCursor": cursor if edges else None}},
            }
        }
    }


def team_page(team_id: int, logins: Iterable[str], parent: Optional[str] = None, maintainers: Iterable[str] = ()) -> dict:
    maintainers = set(maintainers)
    edges = [
        {"cursor": f"Y3Vyc29y{i}", "role": "MAINTAINER" if login in maintainers else "MEMBER", "node": {"login": login}}
        for i, login in enumerate(logins)
    ]
    return {
        "data": {
            "organization": {
                "team": {
                    "databaseId": team_id,
                    "parentTeam": {"slug": parent} if parent else None,
                    "members": {"edges": edges},
                }
            }
        }
    }


def team_not_found() -> dict:
    return {"data": {"organization": {"team": None}}}


def ok(data: dict) -> httpx.Response:
    return httpx.Response(200, json=data)


def paged(pages: list[dict]) -> list[httpx.Response]:
    return [ok(page) for page in pages]


def split_members(members: dict[str, str], page_size: int) -> list[dict]:
    """membersWithRole pages the way GitHub paginates them, ending with an empty page if the last one is full."""
    items = list(members.items())
    pages = [dict(items[i : i + page_size]) for i in range(0, len(items), page_size)]
    if not pages or len(pages[-1]) == page_size:
        pages.append({})
    return [members_page(page) for page in pages]


def request_json(call) -> dict:  # noqa: ANN001
    return json.loads(call.request.content)


def graphql_variables(call) -> dict:  # noqa: ANN001
    return request_json(call)["variables"]


def make_service(cls, settings, run_cache, predictive_cache, **kwargs):  # noqa: ANN001, ANN003, ANN201
    return cls(
        org=ORG,
        token="GoPackGo",
        ou=OU,
        addr=ENDPOINT,
        run_cache=run_cache,
        predictive_cache=predictive_cache,
        settings=settings,
        **kwargs,
    )
