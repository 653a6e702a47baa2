import json

import httpx
import pytest

from cache import PredictiveCache
from desired_state import StaticDesiredState
from entities.github import Action, Group, Team
from errors import InvalidOperationError
from team_controller import TeamController

from .utils import OU, graphql_variables, ok, request_json, team_not_found, team_page

GROUP_NAME = "github-teams"
JUSTICE_LEAGUE = f"cn=justice-league,{OU}"
AVENGERS = f"cn=avengers,{OU}"


@pytest.fixture
def controller_factory(group_config, settings, primed_run_cache, predictive_cache):
    def factory(groups, predictive=None):  # noqa: ANN001, ANN202
        return TeamController(
            GROUP_NAME,
            group_config,
            StaticDesiredState({GROUP_NAME: groups}),
            run_cache=primed_run_cache,
            predictive_cache=predictive if predictive is not None else predictive_cache,
            settings=settings,
        )

    return factory


def mock_teams(github_api, teams: dict[str, dict]):  # noqa: ANN001, ANN201
    """Answer team queries by slug. Slugs missing from `teams` do not exist."""

    def team_query(request: httpx.Request) -> httpx.Response:
        slug = json.loads(request.content)["variables"]["slug"]
        return ok(teams[slug] if slug in teams else team_not_found())

    return github_api.post("/graphql").mock(side_effect=team_query)


def test_unchanged_from_predictive_cache(controller_factory, github_api):
    predictive = PredictiveCache.from_members({JUSTICE_LEAGUE: ["alice", "bob"]})
    controller = controller_factory([Group(dn=JUSTICE_LEAGUE, members=["alice", "Bob"])], predictive)

    controller.prefetch()

    assert controller.calculate() == []
    assert len(github_api.calls) == 0


def test_non_members_are_ignored(controller_factory, github_api):
    route = mock_teams(github_api, {"justice-league": team_page(42, ["alice"])})
    controller = controller_factory([Group(dn=JUSTICE_LEAGUE, members=["alice", "outsider"])])

    assert controller.calculate() == []
    assert route.call_count == 1


def test_new_teams_come_first(controller_factory, github_api):
    mock_teams(github_api, {"avengers": team_page(7, ["alice", "carol"])})
    controller = controller_factory(
        [
            Group(dn=AVENGERS, members=["alice", "bob"]),
            Group(dn=JUSTICE_LEAGUE, members=["alice", "outsider"]),
        ]
    )

    actions = controller.calculate()

    assert [action.dn for action in actions] == [JUSTICE_LEAGUE, AVENGERS]
    assert actions[0].existing is None
    assert actions[0].ignored_users == frozenset({"outsider"})
    assert actions[1].existing.member_strings == {"alice", "carol"}


def test_new_team_is_queried_once(controller_factory, github_api):
    route = mock_teams(github_api, {})
    controller = controller_factory([Group(dn=JUSTICE_LEAGUE, members=["alice"])])

    controller.prefetch()
    [action] = controller.calculate()

    assert action.existing is None
    assert route.call_count == 1


def test_apply_creates_team(controller_factory, github_api):
    create = github_api.post("/orgs/kittensinc/teams").mock(return_value=ok({"id": 42, "slug": "justice-league"}))

    def team_query(request: httpx.Request) -> httpx.Response:
        return ok(team_page(42, []) if create.called else team_not_found())

    github_api.post("/graphql").mock(side_effect=team_query)
    github_api.get("/teams/42").mock(return_value=ok({"id": 42, "slug": "justice-league"}))
    membership = github_api.put("/teams/42/memberships/alice").mock(return_value=ok({"state": "active"}))
    controller = controller_factory([Group(dn=JUSTICE_LEAGUE, members=["alice", "outsider"])])

    [action] = controller.calculate()

    assert controller.apply(action)
    assert request_json(create.calls.last) == {"name": "justice-league", "privacy": "closed"}
    assert membership.call_count == 1


def test_apply_updates_members(controller_factory, github_api):
    route = mock_teams(github_api, {"justice-league": team_page(42, ["alice", "carol"])})
    github_api.get("/teams/42").mock(return_value=ok({"id": 42, "slug": "justice-league"}))
    add = github_api.put("/teams/42/memberships/bob").mock(return_value=ok({"state": "active"}))
    remove = github_api.delete("/teams/42/memberships/carol").mock(return_value=httpx.Response(204))
    controller = controller_factory([Group(dn=JUSTICE_LEAGUE, members=["alice", "bob"])])

    [action] = controller.calculate()

    assert controller.apply(action)
    assert add.call_count == 1
    assert remove.call_count == 1
    assert route.call_count == 1


def test_apply_skips_ignored_only_change(controller_factory, github_api):
    controller = controller_factory([])
    existing = Team(team_id=42, team_name="justice-league", members=["alice"], ou=OU)
    action = Action(
        dn=JUSTICE_LEAGUE,
        existing=existing,
        updated=Group(dn=JUSTICE_LEAGUE, members=["alice", "outsider"]),
        ou=GROUP_NAME,
        ignored_users=frozenset({"outsider"}),
    )

    assert not controller.apply(action)
    assert len(github_api.calls) == 0


def test_apply_team_removal_is_invalid(controller_factory):
    controller = controller_factory([])

    with pytest.raises(InvalidOperationError):
        controller.apply(Action(dn=JUSTICE_LEAGUE, existing=None, updated=None, ou=GROUP_NAME))


def test_team_query_variables(controller_factory, github_api):
    route = mock_teams(github_api, {})
    controller = controller_factory([Group(dn=JUSTICE_LEAGUE, members=["alice"])])

    controller.prefetch()

    assert graphql_variables(route.calls.last) == {"org": "kittensinc", "slug": "justice-league", "first": 3, "after": None}
