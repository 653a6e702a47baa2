import os

import pytest
import respx

import config
from cache import CacheEntry, PredictiveCache, Provenance, RunCache
from entities.github import OrgRole
from org_service import OrgService
from team_service import TeamService

from .utils import ENDPOINT, ORG, OU, SIGNATURE, make_service


def pytest_sessionstart(session):  # noqa: ANN201, ARG001, ANN001
    mock_env = {
        "log_level": "DEBUG",
        "github_api_endpoint": ENDPOINT,
        "http_timeout_seconds": "5",
        "max_graphql_results": "3",
        "wait_between_graphql_retries": "0",
        "rest_retry_sleep": "0",
    }
    os.environ |= mock_env


@pytest.fixture
def settings():
    return config.Config(max_graphql_results=3, wait_between_graphql_retries=0, rest_retry_sleep=0)


@pytest.fixture
def run_cache():
    return RunCache()


@pytest.fixture
def predictive_cache():
    return PredictiveCache()


@pytest.fixture
def github_api():
    """respx router for the fake GitHub endpoint. Unmatched requests fail the test."""
    with respx.mock(base_url=ENDPOINT, assert_all_called=False) as router:
        yield router


@pytest.fixture
def org_members():
    """Organization members already known to the run, so reads make no API call."""
    return {
        "alice": OrgRole.admin,
        "bob": OrgRole.admin,
        "carol": OrgRole.member,
        "dave": OrgRole.member,
    }


@pytest.fixture
def primed_run_cache(run_cache, org_members):
    run_cache.org_members[SIGNATURE] = CacheEntry(value=dict(org_members), provenance=Provenance.live)
    run_cache.pending_members[SIGNATURE] = set()
    return run_cache


@pytest.fixture
def org_service(settings, run_cache, predictive_cache):
    return make_service(OrgService, settings, run_cache, predictive_cache)


@pytest.fixture
def team_service(settings, primed_run_cache, predictive_cache):
    return make_service(TeamService, settings, primed_run_cache, predictive_cache)


@pytest.fixture
def group_config():
    return {"base": OU, "org": ORG, "token": "GoPackGo", "addr": ENDPOINT}
