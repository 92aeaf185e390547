"""Manual edits to an existing distribution: swap, partial deletion, deletion."""

import logging
from typing import Hashable, Tuple

from models.distribution import Assignment
from engine.errors import InvalidParametersError, NotFoundError
from data.store import AssignmentStore, format_counts, make_audit
from config.defaults import UNKNOWN_GROUP

logger = logging.getLogger(__name__)


class ManualAdjustmentService:
    def __init__(self, store: AssignmentStore):
        self.store = store

    def swap(
        self,
        distribution_id: str,
        structure_id_a: Hashable,
        structure_id_b: Hashable,
    ) -> Tuple[Assignment, Assignment]:
        """Exchange the partner slots of two structures.

        The two structures must sit on different partners. A manual swap is
        authoritative: both rows lose their random flag. No size, region or
        proximity check is made, so a swap across categories can leave the
        per-category balance off by more than one until the next redistribute.
        """
        if structure_id_a == structure_id_b:
            raise InvalidParametersError("Cannot swap a structure with itself.")
        if self.store.get_distribution(distribution_id) is None:
            raise NotFoundError(f"Distribution {distribution_id} not found")

        by_structure = {a.structure_id: a for a in self.store.get_items(distribution_id)}
        missing = [s for s in (structure_id_a, structure_id_b) if s not in by_structure]
        if missing:
            raise NotFoundError(
                f"Structure(s) {', '.join(str(m) for m in missing)} not in distribution {distribution_id}"
            )

        item_a, item_b = by_structure[structure_id_a], by_structure[structure_id_b]
        old_a, old_b = item_a.partner_index, item_b.partner_index
        if old_a == old_b:
            raise InvalidParametersError(
                f"Structures {structure_id_a} and {structure_id_b} already share partner slot {old_a}."
            )
        item_a.partner_index, item_b.partner_index = old_b, old_a
        for item in (item_a, item_b):
            item.random = False
            item.swap_count += 1

        audit = [
            make_audit("swap", distribution_id, "partner_index", str(old_a), str(old_b),
                       structure_id=structure_id_a, rationale=f"swapped with {structure_id_b}"),
            make_audit("swap", distribution_id, "partner_index", str(old_b), str(old_a),
                       structure_id=structure_id_b, rationale=f"swapped with {structure_id_a}"),
        ]
        self.store.update_items(distribution_id, [item_a, item_b], audit=audit)
        logger.info("Swapped %s <-> %s in %s", structure_id_a, structure_id_b, distribution_id)
        return item_a, item_b

    def remove_by_category(self, distribution_id: str, category: str) -> int:
        """Drop every structure of one size; the distribution itself stays, even if empty.

        A blank category matches the structures stored under "unknown".
        """
        return self._remove(distribution_id, "remove_category", category=category or UNKNOWN_GROUP)

    def remove_by_region(self, distribution_id: str, region: str) -> int:
        """Drop every structure of one municipality; the distribution itself stays."""
        return self._remove(distribution_id, "remove_region", region=region or UNKNOWN_GROUP)

    def _remove(self, distribution_id: str, action: str, category=None, region=None) -> int:
        before = self.store.get_distribution(distribution_id)
        if before is None:
            raise NotFoundError(f"Distribution {distribution_id} not found")

        if category is not None:
            value, matching = category, [a for a in self.store.get_items(distribution_id) if a.category == category]
        else:
            value, matching = region, [a for a in self.store.get_items(distribution_id) if a.region == region]
        entry = make_audit(action, distribution_id, "total",
                           str(before.total), str(before.total - len(matching)),
                           rationale=f"removed {len(matching)} structure(s) for {value}")

        removed = self.store.delete_items_where(
            distribution_id, category=category, region=region, audit=[entry],
        )
        logger.info("%s %s from %s: %d removed, was %s",
                    action, value, distribution_id, removed, format_counts(before))
        return removed

    def delete_distribution(self, distribution_id: str):
        before = self.store.get_distribution(distribution_id)
        if before is None:
            raise NotFoundError(f"Distribution {distribution_id} not found")
        entry = make_audit("delete", distribution_id, "distribution",
                           before.name, "", rationale=f"{before.total} structure(s)")
        self.store.delete_distribution(distribution_id, audit=[entry])
        logger.info("Deleted distribution %s (%s)", distribution_id, before.name)
