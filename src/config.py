import os
from typing import Optional, Type, TypeVar

from aws_lambda_powertools import Logger
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

import entities
from errors import ConfigurationError

AVAILABLE_FEATURES = frozenset({"invite", "remove"})
DEFAULT_FEATURES = frozenset({"invite", "remove"})

DEFAULT_API_ENDPOINT = "https://api.github.com"


def get_logger(service: Optional[str] = None, level: Optional[str] = None) -> Logger:
    kwargs = {
        "json_default": entities.json_default,
        "level": level or os.environ.get("LOG_LEVEL", "INFO"),
    }
    if service:
        kwargs["service"] = service
    return Logger(**kwargs)


logger = get_logger(service="config")


class Config(BaseSettings):
    model_config = SettingsConfigDict(frozen=True)

    log_level: str = "INFO"

    github_api_endpoint: str = DEFAULT_API_ENDPOINT
    http_timeout_seconds: float = 30.0

    # GitHub caps GraphQL connections at 100 nodes per page
    max_graphql_results: int = Field(default=100, ge=1, le=100)
    max_graphql_pages: int = Field(default=100, ge=1)
    max_graphql_retries: int = Field(default=3, ge=1)
    wait_between_graphql_retries: float = Field(default=1.0, ge=0)

    rest_retries: int = Field(default=3, ge=1)
    rest_retry_sleep: float = Field(default=1.0, ge=0)


_config: Optional[Config] = None


def get_config() -> Config:
    global _config  # noqa: PLW0603
    if _config is None:
        _config = Config()  # type: ignore # noqa: PGH003
    return _config


class GroupConfig(entities.BaseModel):
    """Per-group configuration bag handed over by the entitlements configuration loader."""

    base: str
    org: str
    token: str
    addr: Optional[str] = None
    ignore_not_found: bool = False


class TeamGroupConfig(GroupConfig):
    ...


class OrgGroupConfig(GroupConfig):
    features: Optional[frozenset[str]] = None
    ignore: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("features")
    @classmethod
    def only_known_features(cls, value: Optional[frozenset[str]]) -> Optional[frozenset[str]]:
        if value is None:
            return value
        invalid = value - AVAILABLE_FEATURES
        if invalid:
            raise ValueError(f"Invalid feature(s): {', '.join(sorted(invalid))}")
        return value

    @property
    def enabled_features(self) -> frozenset[str]:
        return DEFAULT_FEATURES if self.features is None else self.features

    @property
    def ignored_users(self) -> frozenset[str]:
        return frozenset(user.lower() for user in self.ignore)


T = TypeVar("T", bound=GroupConfig)


def validate_group_config(model: Type[T], group_name: str, data: dict) -> T:
    """Validate a configuration bag and return it parsed.

    Raises:
        ConfigurationError: naming the group and every violated field.
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(loc) for loc in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors())
        logger.critical(f"Invalid configuration for {group_name!r}: {problems}")
        raise ConfigurationError(f"Invalid configuration for GitHub group {group_name!r}: {problems}") from e
