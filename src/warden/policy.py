"""Least-privilege policy over writes made while serving non-write-intent requests.

A GET request should never need to change much.  Whatever it does change is
described as a :class:`ChangeSet` by the storage adapter and vetted here before
commit.  Policies are declared once per entity type in a
:class:`PolicyRegistry`; anything not declared is denied.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from typing import Any, Callable, Iterable, Mapping, Protocol

import msgspec
from msgspec import Struct

from .exceptions import PolicyViolation

__all__ = [
    "ChangeSet",
    "ChangeSetItem",
    "ChangeTracker",
    "FieldPolicy",
    "ModifiedField",
    "MutationPolicyEngine",
    "PolicyDecision",
    "PolicyRegistry",
    "UnitOfWork",
    "default_registry",
]

logger = logging.getLogger(__name__)


class ModifiedField(Struct, frozen=True):
    name: str
    old_value: Any = None
    new_value: Any = None


class ChangeSetItem(Struct, frozen=True):
    """An entity with its current field values and, for updates, what changed."""

    entity_type: str
    values: Mapping[str, Any] = msgspec.field(default_factory=dict)
    modified: tuple[ModifiedField, ...] = ()

    def modified_names(self) -> frozenset[str]:
        return frozenset(change.name for change in self.modified)


class ChangeSet(Struct, frozen=True):
    inserts: tuple[ChangeSetItem, ...] = ()
    updates: tuple[ChangeSetItem, ...] = ()
    deletes: tuple[ChangeSetItem, ...] = ()

    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes)


class ChangeTracker(Protocol):
    """What a storage adapter exposes before commit."""

    def change_set(self) -> ChangeSet: ...


class FieldPolicy(Struct, frozen=True):
    """Type- and field-level permissions for one entity type.

    ``restricted_id_fields`` hold ids that must belong to the caller's
    permitted list; declaring them also opts the type into guarded updates.
    """

    insert_allowed: bool = False
    update_allowed: bool = False
    forbidden_fields: frozenset[str] = frozenset()
    allowed_fields: frozenset[str] = frozenset()
    restricted_id_fields: frozenset[str] = frozenset()


DENY_ALL = FieldPolicy()


class PolicyRegistry:
    """Static table mapping entity types to :class:`FieldPolicy`."""

    def __init__(self, policies: Mapping[str, FieldPolicy] | None = None) -> None:
        self._policies: dict[str, FieldPolicy] = {}
        self._frozen = False
        for entity_type, policy in (policies or {}).items():
            self.register(entity_type, policy)

    def register(self, entity_type: str, policy: FieldPolicy) -> None:
        if self._frozen:
            raise RuntimeError("Policy registry is frozen")
        if entity_type in self._policies:
            raise ValueError(f"Policy for {entity_type} already registered")
        overlap = policy.forbidden_fields & policy.allowed_fields
        if overlap:
            raise ValueError(f"Fields {sorted(overlap)} of {entity_type} are both forbidden and allowed")
        self._policies[entity_type] = policy

    def freeze(self) -> "PolicyRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def policy_for(self, entity_type: str) -> FieldPolicy:
        return self._policies.get(entity_type, DENY_ALL)

    def entity_types(self) -> Iterable[str]:
        return self._policies.keys()

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._policies


def _identity_provider_policies() -> PolicyRegistry:
    # On a GET: users may be created and updated (never their type), history,
    # attributes and site authorizations may only be written for permitted
    # users, and a pending registration may only be marked deleted.
    return PolicyRegistry(
        {
            "User": FieldPolicy(
                insert_allowed=True,
                forbidden_fields=frozenset({"UserTypeId"}),
                restricted_id_fields=frozenset({"Id"}),
            ),
            "UserHistory": FieldPolicy(insert_allowed=True, restricted_id_fields=frozenset({"UserId"})),
            "UserAttribute": FieldPolicy(insert_allowed=True, restricted_id_fields=frozenset({"UserId"})),
            "UserSiteAuthorization": FieldPolicy(
                insert_allowed=True, restricted_id_fields=frozenset({"UserId"})
            ),
            "PendingUser": FieldPolicy(allowed_fields=frozenset({"DeletionDate"})),
        }
    ).freeze()


_default_registry = _identity_provider_policies()


def default_registry() -> PolicyRegistry:
    """Return the identity provider's declared policies."""

    return _default_registry


class PolicyDecision(Struct, frozen=True):
    admitted: bool
    reason: str | None = None
    entity_type: str | None = None
    field: str | None = None

    def require(self) -> None:
        if not self.admitted:
            raise PolicyViolation(self.reason or "illegal change", entity_type=self.entity_type, field=self.field)


ADMIT = PolicyDecision(admitted=True)


class MutationPolicyEngine:
    """Admit or reject change-sets against a :class:`PolicyRegistry`."""

    def __init__(self, registry: PolicyRegistry | None = None) -> None:
        self.registry = registry or _default_registry

    def evaluate(self, change_set: ChangeSet, permitted_ids: Collection[Any]) -> PolicyDecision:
        decision = self._evaluate(change_set, permitted_ids)
        if not decision.admitted:
            logger.warning("Rejected change-set on non-write request: %s", decision.reason)
        return decision

    def check(self, tracker: ChangeTracker, permitted_ids: Collection[Any]) -> PolicyDecision:
        return self.evaluate(tracker.change_set(), permitted_ids)

    def _evaluate(self, change_set: ChangeSet, permitted_ids: Collection[Any]) -> PolicyDecision:
        if change_set.deletes:
            return PolicyDecision(
                admitted=False,
                reason="illegal hard delete",
                entity_type=change_set.deletes[0].entity_type,
            )
        for item in change_set.inserts:
            decision = self._check_insert(item, permitted_ids)
            if not decision.admitted:
                return decision
        for item in change_set.updates:
            decision = self._check_update(item, permitted_ids)
            if not decision.admitted:
                return decision
        return ADMIT

    def _check_insert(self, item: ChangeSetItem, permitted_ids: Collection[Any]) -> PolicyDecision:
        policy = self.registry.policy_for(item.entity_type)
        if not policy.insert_allowed:
            return PolicyDecision(
                admitted=False, reason=f"illegal insert of {item.entity_type}", entity_type=item.entity_type
            )
        return self._check_restricted_ids(item, policy, permitted_ids) or ADMIT

    def _check_update(self, item: ChangeSetItem, permitted_ids: Collection[Any]) -> PolicyDecision:
        policy = self.registry.policy_for(item.entity_type)
        modified = item.modified_names()
        forbidden = sorted(modified & policy.forbidden_fields)
        if forbidden:
            return PolicyDecision(
                admitted=False,
                reason=f"illegal update of {forbidden[0]} on {item.entity_type}",
                entity_type=item.entity_type,
                field=forbidden[0],
            )
        if policy.restricted_id_fields:
            return self._check_restricted_ids(item, policy, permitted_ids) or ADMIT
        if policy.update_allowed:
            return ADMIT
        if modified <= policy.allowed_fields:
            return ADMIT
        offending = sorted(modified - policy.allowed_fields)
        return PolicyDecision(
            admitted=False,
            reason=f"illegal update to {item.entity_type}",
            entity_type=item.entity_type,
            field=offending[0] if offending else None,
        )

    @staticmethod
    def _check_restricted_ids(
        item: ChangeSetItem, policy: FieldPolicy, permitted_ids: Collection[Any]
    ) -> PolicyDecision | None:
        for name in sorted(policy.restricted_id_fields):
            value = item.values.get(name)
            if value not in permitted_ids:
                return PolicyDecision(
                    admitted=False,
                    reason=f"illegal id placed into {name} of {item.entity_type}, {value}",
                    entity_type=item.entity_type,
                    field=name,
                )
        return None


class UnitOfWork:
    """Reference :class:`ChangeTracker` that vets pending writes before applying them.

    ``apply`` receives the admitted :class:`ChangeSet` and is expected to persist
    it atomically. Rejected work is discarded without calling ``apply``.
    """

    def __init__(self, apply: Callable[[ChangeSet], None]) -> None:
        self._apply = apply
        self._inserts: list[ChangeSetItem] = []
        self._updates: list[ChangeSetItem] = []
        self._deletes: list[ChangeSetItem] = []

    def insert(self, entity_type: str, values: Mapping[str, Any]) -> None:
        self._inserts.append(ChangeSetItem(entity_type=entity_type, values=dict(values)))

    def update(self, entity_type: str, before: Mapping[str, Any], after: Mapping[str, Any]) -> None:
        modified = tuple(
            ModifiedField(name=name, old_value=before.get(name), new_value=after.get(name))
            for name in sorted(set(before) | set(after))
            if before.get(name) != after.get(name)
        )
        if not modified:
            return
        self._updates.append(ChangeSetItem(entity_type=entity_type, values=dict(after), modified=modified))

    def delete(self, entity_type: str, values: Mapping[str, Any]) -> None:
        self._deletes.append(ChangeSetItem(entity_type=entity_type, values=dict(values)))

    def change_set(self) -> ChangeSet:
        return ChangeSet(inserts=tuple(self._inserts), updates=tuple(self._updates), deletes=tuple(self._deletes))

    def rollback(self) -> None:
        self._inserts.clear()
        self._updates.clear()
        self._deletes.clear()

    def commit(
        self,
        *,
        write_intent: bool,
        engine: MutationPolicyEngine | None = None,
        permitted_ids: Collection[Any] = (),
    ) -> ChangeSet:
        """Apply pending work, vetting it first unless the request has write intent.

        Raises :class:`~warden.exceptions.PolicyViolation` and discards the
        pending work when the policy rejects it.
        """

        change_set = self.change_set()
        if not write_intent:
            decision = (engine or MutationPolicyEngine()).evaluate(change_set, permitted_ids)
            if not decision.admitted:
                self.rollback()
                decision.require()
        if not change_set.is_empty():
            self._apply(change_set)
        self.rollback()
        return change_set
