"""Tests for qualifier → upstream option translation."""
import pytest

from gitlabsql.client.gitlab import ListIssuesOptions
from gitlabsql.gitlab.table_issue import ISSUE_QUAL_APPLIERS
from gitlabsql.plugin.quals import apply_optional_quals, set_option


def _translate(quals):
    return apply_optional_quals(ListIssuesOptions(), quals, ISSUE_QUAL_APPLIERS)


@pytest.mark.parametrize("quals,option,expected", [
    ({"assignee": "bob"}, "assignee_username", "bob"),
    ({"assignee_id": 22}, "assignee_id", 22),
    ({"author_id": 21}, "author_id", 21),
    ({"confidential": True}, "confidential", True),
    ({"confidential": False}, "confidential", False),
    ({"search_string": "crash"}, "search", "crash"),
])
def test_each_supported_qual(quals, option, expected):
    opts = _translate(quals)
    assert getattr(opts, option) == expected


def test_no_quals_leaves_defaults():
    assert _translate({}).to_params() == {"page": "1", "per_page": "50", "scope": "all"}


def test_author_username_is_not_translated():
    opts = _translate({"author": "alice"})
    assert opts.to_params() == ListIssuesOptions().to_params()


def test_unrelated_quals_ignored():
    opts = _translate({"project_id": 3, "state": "opened"})
    assert opts.to_params() == ListIssuesOptions().to_params()


def test_all_quals_together():
    opts = _translate({
        "assignee": "bob", "assignee_id": 22, "author": "alice",
        "author_id": 21, "confidential": True, "search_string": "oops",
    })
    assert opts.to_params() == {
        "page": "1", "per_page": "50", "scope": "all",
        "assignee_username": "bob", "assignee_id": "22", "author_id": "21",
        "confidential": "true", "search": "oops",
    }


def test_string_bool_is_parsed():
    assert _translate({"confidential": "false"}).confidential is False


def test_none_value_is_skipped():
    assert _translate({"assignee": None}).assignee_username is None


def test_set_option_casts():
    opts = ListIssuesOptions()
    set_option("author_id", int)(opts, "7")
    assert opts.author_id == 7
