from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import re


@dataclass(frozen=True)
class PolicyRule:
    # (subject, resource-pattern, method-pattern); subject is a user id or a role name.
    subject: str
    resource: str
    methods: str


class InvalidPatternError(ValueError):
    pass


_PARAM_SEGMENT = "[^/]+"


@lru_cache(maxsize=4096)
def _compile_resource(pattern: str) -> re.Pattern[str]:
    # Translate router-style placeholders into an anchored regex, one segment at a time.
    if not pattern.startswith("/") and pattern != "*":
        raise InvalidPatternError(f"Resource pattern must be absolute: {pattern}")
    if pattern == "*":
        return re.compile(r"^.*$")
    parts: list[str] = []
    for segment in pattern.split("/"):
        if segment == "*":
            parts.append(".*")
        elif segment.startswith(":") and len(segment) > 1:
            parts.append(_PARAM_SEGMENT)
        elif segment.startswith("{") and segment.endswith("}") and len(segment) > 2:
            parts.append(_PARAM_SEGMENT)
        elif segment.endswith("*"):
            parts.append(re.escape(segment[:-1]) + ".*")
        else:
            parts.append(re.escape(segment))
    return re.compile("^" + "/".join(parts) + "$")


def validate_resource(pattern: str) -> str:
    _compile_resource(pattern)
    return pattern


def resource_matches(resource: str, pattern: str) -> bool:
    # Match a concrete request path against a stored resource pattern.
    if resource == pattern:
        return True
    return _compile_resource(pattern).match(resource.rstrip("/") or "/") is not None


@lru_cache(maxsize=1024)
def parse_methods(pattern: str) -> frozenset[str]:
    # Accept a literal verb, "*", or an alternation such as "(GET|POST)".
    cleaned = pattern.strip()
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = cleaned[1:-1]
    verbs = frozenset(part.strip().upper() for part in cleaned.split("|") if part.strip())
    if not verbs:
        raise InvalidPatternError(f"Empty method pattern: {pattern}")
    return verbs


def method_matches(method: str, pattern: str) -> bool:
    verbs = parse_methods(pattern)
    return "*" in verbs or method.upper() in verbs


def rule_matches(rule: PolicyRule, *, resource: str, method: str) -> bool:
    return method_matches(method, rule.methods) and resource_matches(resource, rule.resource)


def normalize_methods(methods: str | list[str] | tuple[str, ...]) -> str:
    # Store method sets in one canonical spelling so identical rules deduplicate.
    if isinstance(methods, str):
        verbs = parse_methods(methods)
    else:
        verbs = frozenset(m.strip().upper() for m in methods if m.strip())
        if not verbs:
            raise InvalidPatternError("Empty method list")
    ordered = sorted(verbs)
    if len(ordered) == 1:
        return ordered[0]
    return "(" + "|".join(ordered) + ")"
