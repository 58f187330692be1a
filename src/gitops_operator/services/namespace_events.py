"""
Namespace watch predicate.

Decides whether a namespace event requires immediate RBAC and cluster secret
cleanup for the instance that managed the namespace before the event. The
predicates only ever point at cleanup; granting access needs the full
instance spec and is left to the reconcile loop.
"""

import logging
from dataclasses import dataclass
from typing import Any

from ..constants import MANAGED_BY_LABEL

logger = logging.getLogger(__name__)

DELETED_EVENTS = frozenset({"DELETED"})
SEED_EVENTS = frozenset({None, "ADDED"})


@dataclass(frozen=True)
class NamespaceTransition:
    """A change of the managed-by label on one namespace."""

    namespace: str
    previous_owner: str | None
    current_owner: str | None
    deleted: bool = False

    @property
    def needs_cleanup(self) -> bool:
        if self.previous_owner is None:
            return False
        return self.deleted or self.previous_owner != self.current_owner

    @property
    def affected_owners(self) -> list[str]:
        """Owner namespaces whose instances should reconcile after the event."""
        owners = [self.previous_owner, None if self.deleted else self.current_owner]
        return sorted({owner for owner in owners if owner})


def _owner(labels: dict[str, Any] | None) -> str | None:
    value = (labels or {}).get(MANAGED_BY_LABEL)
    return value or None


def evaluate_update(
    namespace: str,
    old_labels: dict[str, Any] | None,
    new_labels: dict[str, Any] | None,
) -> NamespaceTransition:
    return NamespaceTransition(
        namespace=namespace,
        previous_owner=_owner(old_labels),
        current_owner=_owner(new_labels),
    )


def evaluate_delete(namespace: str, labels: dict[str, Any] | None) -> NamespaceTransition:
    return NamespaceTransition(
        namespace=namespace,
        previous_owner=_owner(labels),
        current_owner=None,
        deleted=True,
    )


class NamespaceEventFilter:
    """
    Turns raw namespace watch events into transitions.

    Raw watch events only carry the new object, so the last seen managed-by
    value of every namespace is kept in memory. The initial listing (and any
    ``ADDED`` event) only seeds that index; a namespace added with a label has
    nothing to clean up.
    """

    def __init__(self):
        self._owners: dict[str, str | None] = {}

    def known_owner(self, namespace: str) -> str | None:
        return self._owners.get(namespace)

    def __len__(self) -> int:
        return len(self._owners)

    def observe(
        self, event_type: str | None, namespace: str, labels: dict[str, Any] | None
    ) -> NamespaceTransition | None:
        """
        Record an event and evaluate it.

        Args:
            event_type: Watch event type (None for the initial listing)
            namespace: Namespace name
            labels: Labels of the namespace as carried by the event

        Returns:
            The transition when the managed-by value changed or the namespace
            was deleted, None otherwise
        """
        if event_type in DELETED_EVENTS:
            previous = self._owners.pop(namespace, None)
            # The deleted object still carries its final labels
            old_labels = {MANAGED_BY_LABEL: previous} if previous else labels
            transition = evaluate_delete(namespace, old_labels)
        elif event_type in SEED_EVENTS:
            self._owners[namespace] = _owner(labels)
            return None
        else:
            previous = self._owners.get(namespace)
            transition = evaluate_update(
                namespace, {MANAGED_BY_LABEL: previous} if previous else {}, labels
            )
            self._owners[namespace] = transition.current_owner

        if transition.needs_cleanup:
            logger.debug(
                f"Namespace {namespace} left owner {transition.previous_owner}",
                extra={"namespace": namespace},
            )
            return transition
        return None
