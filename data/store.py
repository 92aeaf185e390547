"""AssignmentStore contract and the in-memory store.

Every write is all-or-nothing: the new state is built on copies and only swapped
in once it is complete, so a failed call leaves the store untouched. Audit entries
passed to a write are committed with it, never on their own.
"""

import copy
import logging
from datetime import datetime
from typing import Dict, Hashable, Iterable, List, Optional, Protocol, Sequence

from models.distribution import Assignment, Distribution, compute_partner_counts
from models.audit import AuditEntry
from engine.errors import InvalidParametersError, NotFoundError
from config.defaults import AUDIT_ACTIONS

logger = logging.getLogger(__name__)


class AssignmentStore(Protocol):
    """Persistence port for a Distribution header and its Assignment rows."""

    def save_new(
        self,
        distribution: Distribution,
        assignments: List[Assignment],
        audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        """Write header, rows and audit entries together; counts/total are derived from the rows."""
        ...

    def replace_items(
        self,
        distribution_id: str,
        new_assignments: List[Assignment],
        header: Optional[Distribution] = None,
        audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        """Swap all rows of a distribution (and optionally its header) in one write."""
        ...

    def update_items(
        self,
        distribution_id: str,
        assignments: List[Assignment],
        audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        """Overwrite existing rows, matched by assignment id."""
        ...

    def delete_distribution(self, distribution_id: str, audit: Sequence[AuditEntry] = ()) -> None:
        ...

    def delete_items_where(
        self,
        distribution_id: str,
        category: Optional[str] = None,
        region: Optional[str] = None,
        audit: Sequence[AuditEntry] = (),
    ) -> int:
        """Remove rows matching one predicate, recount the header, return rows removed."""
        ...

    def get_distribution(self, distribution_id: str) -> Optional[Distribution]:
        ...

    def list_distributions(self, scope: Optional[str] = None) -> List[Distribution]:
        ...

    def get_items(self, distribution_id: str) -> List[Assignment]:
        ...

    def set_active(
        self, distribution_id: str, scope: str, audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        ...

    def set_inactive(self, distribution_id: str, audit: Sequence[AuditEntry] = ()) -> Distribution:
        ...

    def add_audit_entry(self, entry: AuditEntry) -> None:
        ...

    def get_audit_log(self, distribution_id: Optional[str] = None) -> List[AuditEntry]:
        ...


# --- Shared checks ---

def check_rows(distribution_id: str, assignments: Iterable[Assignment], n_partners: int):
    """Rows must belong to the distribution, reference each structure once, and use valid slots."""
    seen: Dict[Hashable, str] = {}
    for a in assignments:
        if a.distribution_id != distribution_id:
            raise InvalidParametersError(
                f"Assignment {a.assignment_id} belongs to {a.distribution_id}, not {distribution_id}"
            )
        if not 0 <= a.partner_index < n_partners:
            raise InvalidParametersError(
                f"Assignment {a.assignment_id}: partner slot {a.partner_index} outside 0..{n_partners - 1}"
            )
        if a.structure_id in seen:
            raise InvalidParametersError(
                f"Structure {a.structure_id} assigned twice in distribution {distribution_id}"
            )
        seen[a.structure_id] = a.assignment_id


def check_single_predicate(category: Optional[str], region: Optional[str]):
    if (category is None) == (region is None):
        raise InvalidParametersError("Exactly one of category or region must be given.")


def make_audit(
    action: str,
    distribution_id: str,
    field_changed: str,
    old_value: str,
    new_value: str,
    structure_id: Optional[Hashable] = None,
    rationale: str = "",
) -> AuditEntry:
    """Build an audit entry; it is written by the store call it is passed to."""
    if action not in AUDIT_ACTIONS:
        raise InvalidParametersError(f"Unknown audit action: {action}")
    return AuditEntry(
        timestamp=datetime.now(),
        action=action,
        distribution_id=distribution_id,
        field_changed=field_changed,
        old_value=old_value,
        new_value=new_value,
        rationale=rationale,
        structure_id=None if structure_id is None else str(structure_id),
    )


def format_counts(distribution: Distribution) -> str:
    return ", ".join(
        f"{distribution.partner_name(i)}={distribution.partner_counts.get(i, 0)}"
        for i in range(distribution.partner_count)
    )


def apply_counts(distribution: Distribution, assignments: List[Assignment]) -> Distribution:
    """Recompute partner counts and total from the rows."""
    distribution.partner_counts = compute_partner_counts(assignments, distribution.partner_count)
    distribution.total = len(assignments)
    distribution.updated_at = datetime.now()
    return distribution


class InMemoryAssignmentStore:
    """Dict-backed AssignmentStore for tests, scripts, and single-process use."""

    def __init__(self):
        self._distributions: Dict[str, Distribution] = {}
        self._items: Dict[str, List[Assignment]] = {}
        self._audit_log: List[AuditEntry] = []

    def _require(self, distribution_id: str) -> Distribution:
        dist = self._distributions.get(distribution_id)
        if dist is None:
            raise NotFoundError(f"Distribution {distribution_id} not found")
        return dist

    def _commit(
        self,
        distributions: Dict[str, Distribution],
        items: Dict[str, List[Assignment]],
        audit: Sequence[AuditEntry],
    ):
        # callers pass fully built copies; nothing here can fail halfway
        self._audit_log = self._audit_log + copy.deepcopy(list(audit))
        self._distributions = distributions
        self._items = items

    # --- Writes ---

    def save_new(
        self,
        distribution: Distribution,
        assignments: List[Assignment],
        audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        if distribution.distribution_id in self._distributions:
            raise InvalidParametersError(f"Distribution {distribution.distribution_id} already exists")
        check_rows(distribution.distribution_id, assignments, distribution.partner_count)

        header = apply_counts(copy.deepcopy(distribution), assignments)
        distributions = dict(self._distributions)
        distributions[header.distribution_id] = header
        items = dict(self._items)
        items[header.distribution_id] = copy.deepcopy(list(assignments))
        self._commit(distributions, items, audit)
        logger.debug("Saved distribution %s with %d rows", header.distribution_id, header.total)
        return copy.deepcopy(header)

    def replace_items(
        self,
        distribution_id: str,
        new_assignments: List[Assignment],
        header: Optional[Distribution] = None,
        audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        current = self._require(distribution_id)
        new_header = copy.deepcopy(header if header is not None else current)
        new_header.distribution_id = distribution_id
        check_rows(distribution_id, new_assignments, new_header.partner_count)

        new_header = apply_counts(new_header, new_assignments)
        distributions = dict(self._distributions)
        distributions[distribution_id] = new_header
        items = dict(self._items)
        items[distribution_id] = copy.deepcopy(list(new_assignments))
        self._commit(distributions, items, audit)
        return copy.deepcopy(new_header)

    def update_items(
        self,
        distribution_id: str,
        assignments: List[Assignment],
        audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        header = copy.deepcopy(self._require(distribution_id))
        rows = {a.assignment_id: a for a in copy.deepcopy(self._items[distribution_id])}
        for a in assignments:
            if a.assignment_id not in rows:
                raise NotFoundError(f"Assignment {a.assignment_id} not in distribution {distribution_id}")
            rows[a.assignment_id] = copy.deepcopy(a)
        new_rows = list(rows.values())
        check_rows(distribution_id, new_rows, header.partner_count)

        header = apply_counts(header, new_rows)
        distributions = dict(self._distributions)
        distributions[distribution_id] = header
        items = dict(self._items)
        items[distribution_id] = new_rows
        self._commit(distributions, items, audit)
        return copy.deepcopy(header)

    def delete_distribution(self, distribution_id: str, audit: Sequence[AuditEntry] = ()) -> None:
        self._require(distribution_id)
        distributions = {k: v for k, v in self._distributions.items() if k != distribution_id}
        items = {k: v for k, v in self._items.items() if k != distribution_id}
        self._commit(distributions, items, audit)

    def delete_items_where(
        self,
        distribution_id: str,
        category: Optional[str] = None,
        region: Optional[str] = None,
        audit: Sequence[AuditEntry] = (),
    ) -> int:
        check_single_predicate(category, region)
        header = copy.deepcopy(self._require(distribution_id))
        rows = self._items[distribution_id]
        if category is not None:
            kept = [a for a in rows if a.category != category]
        else:
            kept = [a for a in rows if a.region != region]
        removed = len(rows) - len(kept)

        distributions = dict(self._distributions)
        distributions[distribution_id] = apply_counts(header, kept)
        items = dict(self._items)
        items[distribution_id] = kept
        self._commit(distributions, items, audit)
        logger.debug("Removed %d row(s) from %s", removed, distribution_id)
        return removed

    def set_active(
        self, distribution_id: str, scope: str, audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        target = self._require(distribution_id)
        distributions = dict(self._distributions)
        for did, dist in self._distributions.items():
            if did != distribution_id and dist.scope_key == scope and dist.active:
                d = copy.deepcopy(dist)
                d.active = False
                distributions[did] = d
        t = copy.deepcopy(target)
        t.active = True
        distributions[distribution_id] = t
        self._commit(distributions, self._items, audit)
        return copy.deepcopy(t)

    def set_inactive(self, distribution_id: str, audit: Sequence[AuditEntry] = ()) -> Distribution:
        d = copy.deepcopy(self._require(distribution_id))
        d.active = False
        distributions = dict(self._distributions)
        distributions[distribution_id] = d
        self._commit(distributions, self._items, audit)
        return copy.deepcopy(d)

    # --- Reads ---

    def get_distribution(self, distribution_id: str) -> Optional[Distribution]:
        dist = self._distributions.get(distribution_id)
        return copy.deepcopy(dist) if dist is not None else None

    def list_distributions(self, scope: Optional[str] = None) -> List[Distribution]:
        dists = [d for d in self._distributions.values() if scope is None or d.scope_key == scope]
        dists.sort(key=lambda d: d.created_at, reverse=True)
        return copy.deepcopy(dists)

    def get_items(self, distribution_id: str) -> List[Assignment]:
        self._require(distribution_id)
        return copy.deepcopy(self._items[distribution_id])

    # --- Audit ---

    def add_audit_entry(self, entry: AuditEntry) -> None:
        self._commit(self._distributions, self._items, [entry])

    def get_audit_log(self, distribution_id: Optional[str] = None) -> List[AuditEntry]:
        return [copy.deepcopy(e) for e in self._audit_log
                if distribution_id is None or e.distribution_id == distribution_id]
