from __future__ import annotations

from collections import deque
from contextlib import asynccontextmanager
import asyncio
import logging
from typing import AsyncIterator, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ocfcore.persistence.db import SessionLocal
from ocfcore.persistence.repos.policies import (
    PTYPE_GROUPING,
    PTYPE_POLICY,
    delete_rules,
    insert_rule,
    list_rules,
)
from ocfcore.services.authz.matcher import PolicyRule, normalize_methods, rule_matches, validate_resource


logger = logging.getLogger(__name__)


class _ReadWriteLock:
    # Many concurrent readers, one writer; writers wait for readers to drain.
    def __init__(self) -> None:
        self._readers = 0
        self._writer = False
        self._cond = asyncio.Condition()

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class PolicyStore:
    """In-memory projection of the ``casbin_rules`` table.

    Every mutation is written to the database, committed, and then applied to
    the projection while the write lock is held, so ``enforce`` never observes
    a rule set that differs from the committed table for longer than one
    mutation. ``load_policy`` rebuilds the projection from scratch and is safe
    to call at any time.
    """

    def __init__(self, *, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal
        self._lock = _ReadWriteLock()
        self._policies: set[PolicyRule] = set()
        self._groupings: dict[str, set[str]] = {}
        self._loaded = False

    async def load_policy(self) -> None:
        # Rebuild the projection from the policy table.
        async with self._lock.write():
            await self._load_locked()

    async def _load_locked(self) -> None:
        async with self._session_factory() as session:
            rows = await list_rules(session)
        policies: set[PolicyRule] = set()
        groupings: dict[str, set[str]] = {}
        for row in rows:
            if row.ptype == PTYPE_POLICY:
                policies.add(PolicyRule(subject=row.v0, resource=row.v1, methods=row.v2))
            elif row.ptype == PTYPE_GROUPING:
                groupings.setdefault(row.v0, set()).add(row.v1)
        self._policies = policies
        self._groupings = groupings
        self._loaded = True
        logger.debug("policy_store_loaded policies=%s groupings=%s", len(policies), len(rows) - len(policies))

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._lock.write():
            if not self._loaded:
                await self._load_locked()

    async def add_policy(self, subject: str, resource: str, methods: str | list[str]) -> bool:
        # Idempotent: re-adding an identical triple leaves a single row.
        return await self.add_policies([(subject, resource, methods)]) > 0

    async def add_policies(self, rules: Iterable[tuple[str, str, str | list[str]]]) -> int:
        normalized = [
            PolicyRule(
                subject=subject,
                resource=validate_resource(resource),
                methods=normalize_methods(methods),
            )
            for subject, resource, methods in rules
        ]
        if not normalized:
            return 0
        await self._ensure_loaded()
        async with self._lock.write():
            added = 0
            async with self._session_factory() as session:
                try:
                    for rule in normalized:
                        if await insert_rule(
                            session, ptype=PTYPE_POLICY, v0=rule.subject, v1=rule.resource, v2=rule.methods
                        ):
                            added += 1
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
            # Bulk writes rebuild the projection from the committed table.
            await self._load_locked()
        return added

    async def remove_policy(
        self,
        subject: str,
        resource: str,
        methods: str | list[str] | None = None,
    ) -> int:
        # Remove the exact triple, or every method set for (subject, resource) when methods is omitted.
        await self._ensure_loaded()
        normalized = normalize_methods(methods) if methods is not None else None
        async with self._lock.write():
            async with self._session_factory() as session:
                try:
                    removed = await delete_rules(
                        session, ptype=PTYPE_POLICY, v0=subject, v1=resource, v2=normalized
                    )
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
            self._policies = {
                rule
                for rule in self._policies
                if not (
                    rule.subject == subject
                    and rule.resource == resource
                    and (normalized is None or rule.methods == normalized)
                )
            }
        return removed

    async def remove_subject_policies(self, subject: str) -> int:
        # Drop every permission rule and grouping that references a subject.
        await self._ensure_loaded()
        async with self._lock.write():
            async with self._session_factory() as session:
                try:
                    removed = await delete_rules(session, ptype=PTYPE_POLICY, v0=subject)
                    removed += await delete_rules(session, ptype=PTYPE_GROUPING, v0=subject)
                    removed += await delete_rules(session, ptype=PTYPE_GROUPING, v1=subject)
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
            await self._load_locked()
        return removed

    async def add_grouping_policy(self, user: str, role: str) -> bool:
        await self._ensure_loaded()
        async with self._lock.write():
            async with self._session_factory() as session:
                try:
                    added = await insert_rule(session, ptype=PTYPE_GROUPING, v0=user, v1=role)
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
            self._groupings.setdefault(user, set()).add(role)
        return added

    async def remove_grouping_policy(self, user: str, role: str) -> bool:
        await self._ensure_loaded()
        async with self._lock.write():
            async with self._session_factory() as session:
                try:
                    removed = await delete_rules(session, ptype=PTYPE_GROUPING, v0=user, v1=role)
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
            roles = self._groupings.get(user)
            if roles is not None:
                roles.discard(role)
                if not roles:
                    self._groupings.pop(user, None)
        return removed > 0

    async def get_roles_for_user(self, user: str) -> list[str]:
        # Direct roles only.
        await self._ensure_loaded()
        async with self._lock.read():
            return sorted(self._groupings.get(user, set()))

    async def get_implicit_roles_for_user(self, user: str) -> list[str]:
        # Direct and inherited roles, following grouping edges transitively.
        await self._ensure_loaded()
        async with self._lock.read():
            return sorted(self._implicit_roles(user))

    async def get_users_for_role(self, role: str) -> list[str]:
        await self._ensure_loaded()
        async with self._lock.read():
            return sorted(user for user, roles in self._groupings.items() if role in roles)

    async def get_implicit_permissions_for_user(self, user: str) -> list[PolicyRule]:
        # Union of rules over the user and every direct or inherited role.
        await self._ensure_loaded()
        async with self._lock.read():
            subjects = {user} | self._implicit_roles(user)
            rules = [rule for rule in self._policies if rule.subject in subjects]
        return sorted(rules, key=lambda rule: (rule.subject, rule.resource, rule.methods))

    async def has_policy(self, subject: str, resource: str, methods: str | list[str]) -> bool:
        await self._ensure_loaded()
        rule = PolicyRule(subject=subject, resource=resource, methods=normalize_methods(methods))
        async with self._lock.read():
            return rule in self._policies

    async def enforce(self, user: str, resource: str, method: str) -> bool:
        # Permit iff any rule for the user or one of its roles matches; absence of a match denies.
        await self._ensure_loaded()
        async with self._lock.read():
            subjects = {user} | self._implicit_roles(user)
            for rule in self._policies:
                if rule.subject in subjects and rule_matches(rule, resource=resource, method=method):
                    return True
        return False

    def _implicit_roles(self, user: str) -> set[str]:
        seen: set[str] = set()
        queue = deque(self._groupings.get(user, set()))
        while queue:
            role = queue.popleft()
            if role in seen or role == user:
                continue
            seen.add(role)
            queue.extend(self._groupings.get(role, set()))
        return seen


_policy_store: PolicyStore | None = None


def get_policy_store() -> PolicyStore:
    # Share one projection per process so every writer reloads the same matcher.
    global _policy_store
    if _policy_store is None:
        _policy_store = PolicyStore()
    return _policy_store


def reset_policy_store() -> None:
    # Drop the cached projection for deterministic tests.
    global _policy_store
    _policy_store = None
