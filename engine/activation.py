"""One active distribution per activation scope."""

import logging
from typing import Optional

from models.distribution import Distribution
from engine.errors import InvalidParametersError, NotFoundError
from data.store import AssignmentStore, make_audit

logger = logging.getLogger(__name__)


class ActivationManager:
    def __init__(self, store: AssignmentStore):
        self.store = store

    def set_active(self, distribution_id: str, scope: Optional[str] = None) -> Distribution:
        """Make a distribution the canonical one for its scope, deactivating the others.

        The scope is the category selection the distribution was generated from. A
        caller-supplied scope must match it.
        """
        target = self.store.get_distribution(distribution_id)
        if target is None:
            raise NotFoundError(f"Distribution {distribution_id} not found")
        if scope is not None and scope != target.scope_key:
            raise InvalidParametersError(
                f"Distribution {distribution_id} belongs to scope {target.scope_key!r}, not {scope!r}"
            )
        scope = target.scope_key

        previous = self.get_active(scope)
        entry = make_audit(
            "activate", distribution_id, "active",
            previous.distribution_id if previous else "", distribution_id,
            rationale=f"scope={scope}",
        )
        activated = self.store.set_active(distribution_id, scope, audit=[entry])
        logger.info("Activated %s for scope %s", distribution_id, scope)
        return activated

    def get_active(self, scope: str) -> Optional[Distribution]:
        for dist in self.store.list_distributions():
            if dist.active and dist.scope_key == scope:
                return dist
        return None

    def deactivate(self, distribution_id: str) -> Distribution:
        if self.store.get_distribution(distribution_id) is None:
            raise NotFoundError(f"Distribution {distribution_id} not found")
        entry = make_audit("deactivate", distribution_id, "active", "True", "False")
        dist = self.store.set_inactive(distribution_id, audit=[entry])
        logger.info("Deactivated %s", distribution_id)
        return dist
