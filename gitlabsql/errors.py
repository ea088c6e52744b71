from __future__ import annotations


class GitLabSQLError(Exception):
    """Base class for errors raised before any request reaches GitLab."""


class ConfigurationError(GitLabSQLError):
    """Base address or access token could not be resolved."""


class UnsupportedQueryError(GitLabSQLError):
    """
    The query cannot be served without a qualifier the upstream requires.

    Raised instead of issuing a listing the upstream would reject as too
    expensive (e.g. unfiltered instance-wide issue listing on gitlab.com).
    """
