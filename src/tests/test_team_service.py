import httpx
import pytest

from cache import PredictiveCache
from entities.github import PREDICTIVE_TEAM_ID, Group, Team
from errors import ProtocolError
from team_service import TeamService, merge_metadata, parse_maintainers

from .utils import OU, SIGNATURE, make_service, ok, request_json, team_not_found, team_page

TEAM_DN = f"cn=justice-league,{OU}"


@pytest.fixture
def desired():
    return Group(dn=TEAM_DN, members=["Alice", "carol"], metadata={"application_owner": "bob"})


@pytest.fixture
def team():
    return Team(team_id=42, team_name="justice-league", members=["alice", "bob"], ou=OU, metadata={"parent_team_name": None})


def test_read_team_from_api(team_service, desired, github_api):
    route = github_api.post("/graphql").mock(return_value=ok(team_page(42, ["Alice", "bob"], parent="avengers")))

    team = team_service.read_team(desired)

    assert team.team_id == 42
    assert team.member_strings == {"alice", "bob"}
    assert team.metadata == {"application_owner": "bob", "parent_team_name": "avengers"}
    assert not team_service.from_predictive_cache(desired)
    assert route.call_count == 1


def test_read_team_records_maintainers_only_when_declared(team_service, github_api):
    github_api.post("/graphql").mock(return_value=ok(team_page(42, ["alice", "bob"], maintainers=["bob"])))
    declared = Group(dn=TEAM_DN, members=["alice"], metadata={"team_maintainers": "alice"})

    team = team_service.read_team(declared)

    assert team.metadata == {"team_maintainers": ["bob"], "parent_team_name": None}


def test_read_team_not_found_is_not_cached(team_service, desired, github_api):
    route = github_api.post("/graphql").mock(return_value=ok(team_not_found()))

    assert team_service.read_team(desired) is None
    assert team_service.read_team(desired) is None
    assert route.call_count == 2
    assert not team_service.from_predictive_cache(desired)


def test_read_team_from_predictive_cache(settings, primed_run_cache, desired, github_api):
    predictive_cache = PredictiveCache.from_members(
        {TEAM_DN: ["alice", "carol"]}, metadata={TEAM_DN: {"parent_team_name": "avengers"}}
    )
    service = make_service(TeamService, settings, primed_run_cache, predictive_cache)
    route = github_api.post("/graphql")

    team = service.read_team(desired)

    assert team.team_id == PREDICTIVE_TEAM_ID
    assert team.member_strings == {"alice", "carol"}
    assert team.metadata == {"application_owner": "bob", "parent_team_name": "avengers"}
    assert service.from_predictive_cache(desired)
    assert route.call_count == 0


def test_invalidate_predictive_cache(settings, primed_run_cache, desired, github_api):
    predictive_cache = PredictiveCache.from_members({TEAM_DN: ["alice", "carol"]})
    service = make_service(TeamService, settings, primed_run_cache, predictive_cache)
    route = github_api.post("/graphql").mock(return_value=ok(team_page(42, ["alice"])))

    service.invalidate_predictive_cache(desired)
    service.invalidate_predictive_cache(desired)

    assert route.call_count == 1
    assert service.read_team(desired).team_id == 42
    assert predictive_cache.is_invalid(TEAM_DN)


def test_graphql_team_data_paginates(team_service, github_api):
    route = github_api.post("/graphql").mock(
        side_effect=[
            ok(team_page(42, ["a", "b", "c"], parent="avengers")),
            ok(team_page(42, ["d"], parent="avengers")),
        ]
    )

    data = team_service.graphql_team_data("justice-league")

    assert data.members == ["a", "b", "c", "d"]
    assert data.parent_team_name == "avengers"
    assert route.call_count == 2
    assert request_json(route.calls[1])["variables"]["after"] == "Y3Vyc29y2"
    assert request_json(route.calls[1])["variables"]["slug"] == "justice-league"


def test_sync_team_members(team_service, desired, team, github_api):
    github_api.get("/teams/42").mock(return_value=ok({"id": 42, "slug": "justice-league"}))
    add = github_api.put("/teams/42/memberships/carol").mock(return_value=ok({"state": "active", "role": "member"}))
    remove = github_api.delete("/teams/42/memberships/bob").mock(return_value=httpx.Response(204))

    assert team_service.sync_team(desired, team)
    assert add.call_count == remove.call_count == 1
    assert request_json(add.calls[0]) == {"role": "member"}


def test_sync_team_skips_organization_non_members(team_service, team, github_api):
    desired = Group(dn=TEAM_DN, members=["alice", "bob", "outsider"])

    assert not team_service.sync_team(desired, team)
    assert len(github_api.calls) == 0


def test_sync_team_parent_team_change(team_service, team, github_api):
    desired = Group(dn=TEAM_DN, members=["alice", "bob"], metadata={"parent_team_name": "avengers"})
    github_api.get("/orgs/kittensinc/teams/avengers").mock(return_value=ok({"id": 7, "slug": "avengers"}))
    patch = github_api.patch("/teams/42").mock(return_value=ok({"id": 42}))

    assert team_service.sync_team(desired, team)
    assert request_json(patch.calls[0]) == {"name": "justice-league", "privacy": "closed", "parent_team_id": 7}


def test_sync_team_missing_parent_team(team_service, team, github_api):
    desired = Group(dn=TEAM_DN, members=["alice", "bob"], metadata={"parent_team_name": "avengers"})
    github_api.get("/orgs/kittensinc/teams/avengers").mock(return_value=httpx.Response(404))

    with pytest.raises(ProtocolError):
        team_service.sync_team(desired, team)


def test_sync_team_ignores_parent_team_removal(team_service, github_api):
    current = Team(team_id=42, team_name="justice-league", members=["alice"], ou=OU, metadata={"parent_team_name": "avengers"})
    desired = Group(dn=TEAM_DN, members=["alice"])

    assert not team_service.sync_team(desired, current)
    assert len(github_api.calls) == 0


def test_sync_team_promotes_members_only(team_service, github_api):
    current = Team(team_id=42, team_name="justice-league", members=["alice", "bob"], ou=OU, metadata={"team_maintainers": []})
    desired = Group(dn=TEAM_DN, members=["alice", "bob"], metadata={"team_maintainers": "Bob, outsider"})
    github_api.get("/teams/42").mock(return_value=ok({"id": 42, "slug": "justice-league"}))
    promote = github_api.put("/teams/42/memberships/bob").mock(return_value=ok({"state": "active", "role": "maintainer"}))

    assert team_service.sync_team(desired, current)
    assert request_json(promote.calls[0]) == {"role": "maintainer"}
    assert len(github_api.calls) == 2


def test_sync_team_ignores_maintainer_removal(team_service, github_api):
    current = Team(team_id=42, team_name="justice-league", members=["alice"], ou=OU, metadata={"team_maintainers": ["alice"]})
    desired = Group(dn=TEAM_DN, members=["alice"], metadata={"team_maintainers": []})

    assert not team_service.sync_team(desired, current)
    assert len(github_api.calls) == 0


def test_create_team_with_parent(team_service, github_api):
    github_api.post("/graphql").mock(return_value=ok(team_page(7, ["x"])))
    create = github_api.post("/orgs/kittensinc/teams").mock(return_value=httpx.Response(201, json={"id": 42}))
    group = Group(dn="cn=Justice-League," + OU, members=["alice"], metadata={"parent_team_name": "avengers"})

    assert team_service.create_team(group)
    assert request_json(create.calls[0]) == {"name": "justice-league", "privacy": "closed", "parent_team_id": 7}


def test_validate_team_id_and_slug_is_cached(team_service, github_api):
    route = github_api.get("/teams/42").mock(return_value=ok({"id": 42, "slug": "justice-league"}))

    team_service.validate_team_id_and_slug(42, "justice-league")
    team_service.validate_team_id_and_slug(42, "justice-league")

    assert route.call_count == 1
    assert team_service.run_cache.team_slugs_by_id[SIGNATURE] == {42: "justice-league"}


def test_validate_team_id_and_slug_mismatch(team_service, github_api):
    github_api.get("/teams/42").mock(return_value=ok({"id": 42, "slug": "avengers"}))

    with pytest.raises(ProtocolError):
        team_service.validate_team_id_and_slug(42, "justice-league")


def test_parse_maintainers():
    assert parse_maintainers(None) == set()
    assert parse_maintainers("Alice, bob carol") == {"alice", "bob", "carol"}
    assert parse_maintainers(["Alice", " bob "]) == {"alice", "bob"}


def test_merge_metadata_current_wins():
    assert merge_metadata(None, None) is None
    assert merge_metadata({"a": 1}, None) == {"a": 1}
    assert merge_metadata(None, {"b": 2}) == {"b": 2}
    assert merge_metadata({"a": 1, "parent_team_name": "x"}, {"parent_team_name": "y"}) == {"a": 1, "parent_team_name": "y"}
