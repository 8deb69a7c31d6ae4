from __future__ import annotations

import pytest

from ocfcore.services.authz.matcher import (
    InvalidPatternError,
    PolicyRule,
    method_matches,
    normalize_methods,
    parse_methods,
    resource_matches,
    rule_matches,
)


def test_exact_and_placeholder_segments_match() -> None:
    assert resource_matches("/api/v1/organizations", "/api/v1/organizations")
    assert resource_matches("/api/v1/organizations/abc", "/api/v1/organizations/:id")
    assert resource_matches("/api/v1/organizations/abc", "/api/v1/organizations/{organization_id}")
    # Placeholders never span more than one segment.
    assert not resource_matches("/api/v1/organizations/abc/members", "/api/v1/organizations/:id")


def test_wildcard_suffix_covers_nested_paths_only() -> None:
    pattern = "/api/v1/users/me/*"
    assert resource_matches("/api/v1/users/me/permissions", pattern)
    assert resource_matches("/api/v1/users/me/usage/check", pattern)
    assert not resource_matches("/api/v1/users/other/permissions", pattern)
    assert resource_matches("/anything/at/all", "*")


def test_trailing_slash_is_ignored_for_requests() -> None:
    assert resource_matches("/api/v1/terminals/", "/api/v1/terminals")


def test_relative_pattern_is_rejected() -> None:
    with pytest.raises(InvalidPatternError):
        resource_matches("/api/v1/x", "api/v1/x")


def test_method_alternation_and_wildcard() -> None:
    assert parse_methods("(GET|POST)") == frozenset({"GET", "POST"})
    assert method_matches("post", "(GET|POST)")
    assert not method_matches("DELETE", "(GET|POST)")
    assert method_matches("DELETE", "*")


def test_empty_method_pattern_is_rejected() -> None:
    with pytest.raises(InvalidPatternError):
        parse_methods("()")
    with pytest.raises(InvalidPatternError):
        normalize_methods([" "])


def test_normalize_methods_is_canonical() -> None:
    assert normalize_methods("get") == "GET"
    assert normalize_methods(["post", "GET"]) == "(GET|POST)"
    assert normalize_methods("(POST|GET|POST)") == "(GET|POST)"


def test_rule_matches_requires_method_and_resource() -> None:
    rule = PolicyRule(subject="member", resource="/api/v1/terminals/*", methods="(GET|POST)")
    assert rule_matches(rule, resource="/api/v1/terminals/t1/stop", method="POST")
    assert not rule_matches(rule, resource="/api/v1/terminals/t1", method="DELETE")
    assert not rule_matches(rule, resource="/api/v1/licenses/t1", method="GET")
