"""Read-side summaries of structure sets and distributions."""

from collections import Counter, defaultdict
from typing import Dict, List

import pandas as pd

from models.structure import Structure
from models.distribution import Assignment, Distribution
from config.defaults import UNKNOWN_GROUP


def category_preview(structures: List[Structure], n_partners: int) -> pd.DataFrame:
    """Per-category share each partner will get, before generating."""
    counts = Counter(s.category or UNKNOWN_GROUP for s in structures)
    rows = [{
        "category": category,
        "count": count,
        "per_partner": count // n_partners,
        "remainder": count % n_partners,
    } for category, count in sorted(counts.items())]
    return pd.DataFrame(rows, columns=["category", "count", "per_partner", "remainder"])


def category_partner_counts(assignments: List[Assignment], n_partners: int) -> Dict[str, Dict[int, int]]:
    table: Dict[str, Dict[int, int]] = defaultdict(lambda: {i: 0 for i in range(n_partners)})
    for a in assignments:
        table[a.category][a.partner_index] += 1
    return dict(table)


def partner_breakdown(distribution: Distribution, assignments: List[Assignment]) -> pd.DataFrame:
    """Category x partner-name count table, with a Total row."""
    names = [distribution.partner_name(i) for i in range(distribution.partner_count)]
    table = category_partner_counts(assignments, distribution.partner_count)
    df = pd.DataFrame(
        [[table[c][i] for i in range(distribution.partner_count)] for c in sorted(table)],
        index=pd.Index(sorted(table), name="category"),
        columns=names,
    )
    df.loc["Total"] = df.sum(axis=0).to_numpy() if not df.empty else [0] * len(names)
    return df.astype(int)


def imbalanced_categories(assignments: List[Assignment], n_partners: int) -> List[str]:
    """Categories whose partner counts differ by more than one (e.g. after a swap)."""
    table = category_partner_counts(assignments, n_partners)
    return sorted(c for c, counts in table.items()
                  if max(counts.values()) - min(counts.values()) > 1)


def random_share(assignments: List[Assignment]) -> float:
    """Fraction of rows placed by balance repair rather than proximity."""
    if not assignments:
        return 0.0
    return sum(1 for a in assignments if a.random) / len(assignments)
