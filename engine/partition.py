"""Balanced, proximity-aware partition of structures into partner slots."""

import logging
import math
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Optional, Set

from models.structure import Structure
from engine.clustering import build_clusters
from engine.errors import EmptyInputError, InvalidParametersError
from engine.explainer import explain_partition
from config.defaults import MIN_PARTNERS, UNKNOWN_GROUP

logger = logging.getLogger(__name__)


@dataclass
class PlannedItem:
    structure: Structure
    partner_index: int
    random: bool = False
    site_group: str = ""


@dataclass
class CategoryReport:
    category: str
    structure_count: int
    cluster_count: int
    largest_cluster: int
    quota: int                   # floor(count / n_partners)
    remainder: int               # partners receiving quota + 1
    partner_counts: Dict[int, int] = field(default_factory=dict)
    repaired_moves: int = 0
    unlocated: int = 0           # structures without coordinates (singleton clusters)


@dataclass
class PartitionPlan:
    items: List[PlannedItem]
    category_reports: List[CategoryReport]
    explanation_steps: List[str] = field(default_factory=list)

    def partner_counts(self, n_partners: int) -> Dict[int, int]:
        counts = {i: 0 for i in range(n_partners)}
        for item in self.items:
            counts[item.partner_index] += 1
        return counts


def validate_inputs(structures: List[Structure], threshold_meters: float, n_partners: int):
    """Reject inputs the planner cannot distribute."""
    if not structures:
        raise EmptyInputError("No structures to distribute.")
    if n_partners < MIN_PARTNERS:
        raise InvalidParametersError(
            f"At least {MIN_PARTNERS} partners are required, got {n_partners}."
        )
    if threshold_meters is None or math.isnan(threshold_meters) or threshold_meters <= 0:
        raise InvalidParametersError(f"threshold_meters must be positive, got {threshold_meters}.")
    seen: Set[Hashable] = set()
    dupes = []
    for s in structures:
        if s.structure_id in seen:
            dupes.append(s.structure_id)
        seen.add(s.structure_id)
    if dupes:
        raise InvalidParametersError(f"Duplicate structure ids in input: {sorted(set(dupes), key=str)}")


def _spread(counts: Dict[int, int]) -> int:
    return max(counts.values()) - min(counts.values())


def repair_balance(
    items: List[PlannedItem],
    n_partners: int,
    adjacency: Dict[Hashable, Set[Hashable]],
    rng: random.Random,
) -> int:
    """Move items from the most- to the least-loaded partner until max - min <= 1.

    The donor item is the one with the fewest threshold neighbours already on the
    receiving partner; ties go to the seeded RNG. Moved items are flagged random.
    Returns the number of moves made.
    """
    counts = {i: 0 for i in range(n_partners)}
    partner_of: Dict[Hashable, int] = {}
    for item in items:
        counts[item.partner_index] += 1
        partner_of[item.structure.structure_id] = item.partner_index

    moves = 0
    while _spread(counts) > 1:
        donor = max(counts, key=lambda p: (counts[p], -p))
        receiver = min(counts, key=lambda p: (counts[p], p))

        def conflict(item: PlannedItem) -> int:
            return sum(
                1 for nb in adjacency.get(item.structure.structure_id, ())
                if partner_of.get(nb) == receiver
            )

        candidates = [it for it in items if it.partner_index == donor]
        scored = [(conflict(it), it) for it in candidates]
        lowest = min(score for score, _ in scored)
        pool = [it for score, it in scored if score == lowest]
        chosen = pool[0] if len(pool) == 1 else rng.choice(pool)

        chosen.partner_index = receiver
        chosen.random = True
        partner_of[chosen.structure.structure_id] = receiver
        counts[donor] -= 1
        counts[receiver] += 1
        moves += 1
        logger.debug(
            "repair: moved %s from partner %d to %d (conflict=%d)",
            chosen.structure.structure_id, donor, receiver, lowest,
        )
    return moves


def _site_label(category: str, cluster: List[Structure], cluster_idx: int) -> str:
    region = cluster[0].region or UNKNOWN_GROUP
    return f"{category}_{region}_site{cluster_idx}"


def plan_partition(
    structures: List[Structure],
    threshold_meters: float,
    n_partners: int,
    rng: random.Random,
    planner_config: Optional[dict] = None,
) -> PartitionPlan:
    """Split structures among `n_partners` slots, balanced per category and spread by proximity.

    The rotation cursor runs on across a category's clusters without resetting,
    so every category already comes out within one of even and the repair pass
    makes no moves here. It only acts on hand-edited rows passed to
    `repair_balance` directly.
    """
    cfg = planner_config or {}
    cell_meters = cfg.get("grid_cell_meters")

    # Step 1: Validate
    validate_inputs(structures, threshold_meters, n_partners)

    # Step 2: Group by category
    by_category: Dict[str, List[Structure]] = {}
    for s in structures:
        by_category.setdefault(s.category or UNKNOWN_GROUP, []).append(s)

    global_counts = [0] * n_partners
    all_items: List[PlannedItem] = []
    reports: List[CategoryReport] = []

    for category in sorted(by_category):
        members = by_category[category]

        # Step 3: Proximity clusters
        clustering = build_clusters(members, threshold_meters, cell_meters)

        # Step 4: Round-robin; each cluster starts where the previous one stopped.
        # Partners with the fewest structures overall come first, so a category's
        # remainder lands on them.
        rotation = sorted(range(n_partners), key=lambda p: (global_counts[p], p))
        cursor = 0
        items: List[PlannedItem] = []
        for cluster_idx, cluster in enumerate(clustering.clusters):
            site_group = _site_label(category, cluster, cluster_idx)
            for member in cluster:
                items.append(PlannedItem(member, rotation[cursor % n_partners], False, site_group))
                cursor += 1

        # Step 5: Balance repair
        moves = repair_balance(items, n_partners, clustering.adjacency, rng)

        counts = Counter(it.partner_index for it in items)
        for p in range(n_partners):
            global_counts[p] += counts.get(p, 0)

        reports.append(CategoryReport(
            category=category,
            structure_count=len(members),
            cluster_count=len(clustering.clusters),
            largest_cluster=max(clustering.sizes),
            quota=len(members) // n_partners,
            remainder=len(members) % n_partners,
            partner_counts={p: counts.get(p, 0) for p in range(n_partners)},
            repaired_moves=moves,
            unlocated=sum(1 for s in members if not s.has_coordinates),
        ))
        all_items.extend(items)

    explanation = explain_partition(reports, n_partners, threshold_meters)
    logger.info(
        "Planned %d structures across %d categories for %d partners",
        len(all_items), len(reports), n_partners,
    )
    return PartitionPlan(items=all_items, category_reports=reports, explanation_steps=explanation)
