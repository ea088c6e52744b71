from __future__ import annotations
import os
from typing import Mapping, Optional

from pydantic import AliasChoices, BaseModel, Field

from gitlabsql.errors import ConfigurationError

GITLAB_CLOUD_API_URL = "https://gitlab.com/api/v4"
API_PATH = "/api/v4"

ENV_BASE_URL = "GITLAB_ADDR"
ENV_TOKEN = "GITLAB_TOKEN"

DEFAULT_PAGE_SIZE = 50


class ConnectionConfig(BaseModel):
    """
    Connection-scoped configuration, loaded from a YAML file.

    Both fields are optional: a field left out falls back to its environment
    variable, while a field that is present (even empty) overrides it.
    """

    name: str = "gitlab"
    base_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("base_url", "baseurl")
    )
    token: Optional[str] = None


class GitLabSettings(BaseModel):
    """
    Fully resolved connection settings.

    Built once by resolve_settings() and passed by reference into every
    hydrate call, so handlers never consult the environment themselves.
    """

    connection_name: str = "gitlab"
    base_url: str                     # normalised, always ends in /api/v4
    token: str
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def is_gitlab_cloud(self) -> bool:
        return is_gitlab_cloud(self.base_url)


def normalize_base_url(url: str) -> str:
    """'https://gitlab.example.com/' → 'https://gitlab.example.com/api/v4'"""
    url = url.strip().rstrip("/")
    if not url.endswith(API_PATH):
        url += API_PATH
    return url


def is_gitlab_cloud(base_url: str) -> bool:
    """True when base_url points at the hosted multi-tenant gitlab.com API."""
    if not base_url:
        return False
    return normalize_base_url(base_url) == GITLAB_CLOUD_API_URL


def resolve_settings(
    connection: Optional[ConnectionConfig] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> GitLabSettings:
    """
    Merge environment defaults with connection config overrides.

    Raises:
        ConfigurationError: base address or token resolves to empty.
    """
    env = os.environ if environ is None else environ

    base_url = env.get(ENV_BASE_URL, "")
    token = env.get(ENV_TOKEN, "")
    name = "gitlab"

    if connection is not None:
        name = connection.name
        if connection.base_url is not None:
            base_url = connection.base_url
        if connection.token is not None:
            token = connection.token

    if not base_url:
        raise ConfigurationError(
            "GitLab Base Address must be set either in GITLAB_ADDR env var "
            "or in connection config file"
        )
    if not token:
        raise ConfigurationError(
            "GitLab Private/Personal Access Token must be set either in "
            "GITLAB_TOKEN env var or in connection config file"
        )

    return GitLabSettings(
        connection_name=name,
        base_url=normalize_base_url(base_url),
        token=token,
    )
