"""PartitionPlanner: generate and redistribute persisted distributions."""

import copy
import logging
import random
import secrets
import uuid
from datetime import datetime
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Protocol, Tuple

from models.structure import Structure
from models.distribution import Assignment, Distribution, FilterSnapshot, compute_partner_counts
from engine.errors import EmptyInputError, InvalidParametersError, NotFoundError, StaleReferenceError
from engine.partition import PartitionPlan, PlannedItem, plan_partition
from data.store import AssignmentStore, format_counts, make_audit
from config.defaults import (
    ALL_SCOPE, DEFAULT_PARTNER_NAMES, DEFAULT_THRESHOLD_METERS, MIN_PARTNERS, UNKNOWN_GROUP,
)

logger = logging.getLogger(__name__)


class StructureCatalog(Protocol):
    """Port onto the external structure catalog."""

    def resolve(self, structure_ids: Iterable[Hashable]) -> Dict[Hashable, Structure]:
        """Return the structures that still exist, keyed by id. Unknown ids are omitted."""
        ...


class InMemoryCatalog:
    def __init__(self, structures: Iterable[Structure] = ()):
        self._by_id: Dict[Hashable, Structure] = {s.structure_id: s for s in structures}

    def add(self, structure: Structure):
        self._by_id[structure.structure_id] = structure

    def remove(self, structure_id: Hashable):
        self._by_id.pop(structure_id, None)

    def resolve(self, structure_ids: Iterable[Hashable]) -> Dict[Hashable, Structure]:
        return {i: self._by_id[i] for i in structure_ids if i in self._by_id}


def new_seed() -> str:
    return secrets.token_hex(8)


def default_distribution_name(snapshot: FilterSnapshot, created_at: datetime) -> str:
    scope = ", ".join(sorted(snapshot.categories)) if snapshot.categories else ALL_SCOPE
    return f"Distribution {scope} - {created_at:%Y-%m-%d}"


def normalize_partner_names(partner_names: Optional[List[str]]) -> List[str]:
    """Validate the partner list; blank names fall back to "Partner <n>".

    None means the default two-partner setup.
    """
    if partner_names is None:
        partner_names = DEFAULT_PARTNER_NAMES
    names = [str(n).strip() if n is not None else "" for n in partner_names]
    if len(names) < MIN_PARTNERS:
        raise InvalidParametersError(
            f"At least {MIN_PARTNERS} partners are required, got {len(names)}."
        )
    return [n or f"Partner {i + 1}" for i, n in enumerate(names)]


def to_assignments(distribution_id: str, items: List[PlannedItem]) -> List[Assignment]:
    return [
        Assignment(
            assignment_id=str(uuid.uuid4()),
            distribution_id=distribution_id,
            structure_id=item.structure.structure_id,
            partner_index=item.partner_index,
            random=item.random,
            category=item.structure.category or UNKNOWN_GROUP,
            region=item.structure.region or UNKNOWN_GROUP,
            site_group=item.site_group,
        )
        for item in items
    ]


class PartitionPlanner:
    """Runs the partition algorithm and persists its result through an AssignmentStore."""

    def __init__(
        self,
        store: AssignmentStore,
        catalog: Optional[StructureCatalog] = None,
        rng_factory: Optional[Callable[[str], random.Random]] = None,
        planner_config: Optional[dict] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.rng_factory = rng_factory or random.Random
        self.planner_config = planner_config or {}
        self.last_plan: Optional[PartitionPlan] = None

    def plan(
        self,
        structures: List[Structure],
        threshold_meters: float,
        n_partners: int,
        seed: str,
    ) -> PartitionPlan:
        """Pure planning step; nothing is persisted."""
        plan = plan_partition(
            structures, threshold_meters, n_partners,
            self.rng_factory(seed), self.planner_config,
        )
        self.last_plan = plan
        return plan

    def explain(self) -> List[str]:
        return list(self.last_plan.explanation_steps) if self.last_plan else []

    def generate(
        self,
        structures: List[Structure],
        threshold_meters: float = DEFAULT_THRESHOLD_METERS,
        partner_names: Optional[List[str]] = None,
        filter_snapshot: Optional[FilterSnapshot] = None,
        name: Optional[str] = None,
        seed: Optional[str] = None,
    ) -> Tuple[Distribution, List[Assignment]]:
        """Partition `structures` and save the result as a new, inactive distribution."""
        if not structures:
            raise EmptyInputError("No structures match the selected filters.")
        names = normalize_partner_names(partner_names)
        snapshot = filter_snapshot or FilterSnapshot()
        seed = seed or new_seed()

        plan = self.plan(structures, threshold_meters, len(names), seed)

        created_at = datetime.now()
        distribution = Distribution(
            distribution_id=str(uuid.uuid4()),
            name=name or default_distribution_name(snapshot, created_at),
            filter_snapshot=copy.deepcopy(snapshot),
            threshold_meters=float(threshold_meters),
            partner_names=names,
            active=False,
            created_at=created_at,
            random_seed=seed,
        )
        assignments = to_assignments(distribution.distribution_id, plan.items)
        distribution.partner_counts = compute_partner_counts(assignments, len(names))
        distribution.total = len(assignments)
        entry = make_audit(
            "generate", distribution.distribution_id, "partner_counts",
            "", format_counts(distribution),
            rationale=f"threshold={distribution.threshold_meters:.0f}m seed={seed}",
        )
        saved = self.store.save_new(distribution, assignments, audit=[entry])

        logger.info(
            "Generated distribution %s (%s): %d structures, %s",
            saved.distribution_id, saved.name, saved.total, format_counts(saved),
        )
        return saved, assignments

    def redistribute(
        self,
        distribution_id: str,
        threshold_meters: Optional[float] = None,
        partner_names: Optional[List[str]] = None,
        seed: Optional[str] = None,
    ) -> Distribution:
        """Re-run the algorithm over the structures already in a distribution, in place.

        Threshold and partner names default to the ones the distribution was built with.
        """
        if self.catalog is None:
            raise InvalidParametersError("Redistribution needs a structure catalog.")

        current = self.store.get_distribution(distribution_id)
        if current is None:
            raise NotFoundError(f"Distribution {distribution_id} not found")
        items = self.store.get_items(distribution_id)
        if not items:
            raise EmptyInputError(f"Distribution {distribution_id} has no structures to redistribute.")

        ids = [a.structure_id for a in items]
        resolved = self.catalog.resolve(ids)
        missing = [i for i in ids if i not in resolved]
        if missing:
            logger.warning(
                "Distribution %s references %d structure(s) missing from the catalog",
                distribution_id, len(missing),
            )
            raise StaleReferenceError(distribution_id, missing)

        if threshold_meters is None:
            threshold_meters = current.threshold_meters
        names = normalize_partner_names(partner_names if partner_names is not None else current.partner_names)
        seed = seed or new_seed()
        plan = self.plan([resolved[i] for i in ids], threshold_meters, len(names), seed)

        header = copy.deepcopy(current)
        header.threshold_meters = float(threshold_meters)
        header.partner_names = names
        header.random_seed = seed
        assignments = to_assignments(distribution_id, plan.items)
        header.partner_counts = compute_partner_counts(assignments, len(names))
        header.total = len(assignments)
        entry = make_audit(
            "redistribute", distribution_id, "partner_counts",
            format_counts(current), format_counts(header),
            rationale=f"threshold={header.threshold_meters:.0f}m seed={seed}",
        )
        saved = self.store.replace_items(distribution_id, assignments, header=header, audit=[entry])

        logger.info(
            "Redistributed %s: %d structures, %s",
            distribution_id, saved.total, format_counts(saved),
        )
        return saved
