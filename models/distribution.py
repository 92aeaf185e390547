from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Hashable, Iterable, List, Optional

from config.defaults import ALL_SCOPE
from models.structure import Structure


@dataclass
class FilterSnapshot:
    """Catalog filters used to build a distribution's input set. Empty list = all."""
    categories: List[str] = field(default_factory=list)
    regions: List[str] = field(default_factory=list)
    localities: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    def matches(self, structure: Structure) -> bool:
        return (
            (not self.categories or structure.category in self.categories)
            and (not self.regions or structure.region in self.regions)
            and (not self.localities or structure.locality in self.localities)
            and (not self.tags or structure.tag in self.tags)
        )

    @property
    def scope_key(self) -> str:
        """Activation scope: the category selection the distribution was built from."""
        if not self.categories:
            return ALL_SCOPE
        return "|".join(sorted(set(self.categories)))


@dataclass
class Distribution:
    distribution_id: str
    name: str
    filter_snapshot: FilterSnapshot
    threshold_meters: float
    partner_names: List[str]
    partner_counts: Dict[int, int] = field(default_factory=dict)
    total: int = 0
    active: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    random_seed: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def partner_count(self) -> int:
        return len(self.partner_names)

    @property
    def scope_key(self) -> str:
        return self.filter_snapshot.scope_key

    def partner_name(self, index: int) -> str:
        if 0 <= index < len(self.partner_names):
            return self.partner_names[index]
        return f"Partner {index + 1}"


@dataclass
class Assignment:
    assignment_id: str
    distribution_id: str
    structure_id: Hashable
    partner_index: int
    random: bool = False          # balance-corrected rather than proximity-placed
    category: str = ""
    region: str = ""
    site_group: str = ""          # proximity cluster label
    swap_count: int = 0


def compute_partner_counts(assignments: Iterable[Assignment], n_partners: int) -> Dict[int, int]:
    """Count assignments per partner slot, with every slot 0..n-1 present."""
    counts = {i: 0 for i in range(n_partners)}
    for a in assignments:
        counts[a.partner_index] = counts.get(a.partner_index, 0) + 1
    return counts
