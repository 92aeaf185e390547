"""Generates human-readable explanations for partition results."""

from typing import List


def explain_category(report, n_partners: int) -> List[str]:
    """Produce step-by-step explanation for one category of a partition."""
    steps = []

    steps.append(
        f"Category {report.category}: {report.structure_count} structures => "
        f"{report.quota} per partner, {report.remainder} partner(s) get one extra"
    )

    singletons_note = ""
    if report.unlocated:
        singletons_note = f" ({report.unlocated} without coordinates, kept as single sites)"
    steps.append(
        f"  Proximity: {report.cluster_count} site cluster(s), largest has "
        f"{report.largest_cluster} structure(s){singletons_note}"
    )

    if report.largest_cluster > n_partners:
        steps.append(
            f"  Note: largest cluster exceeds {n_partners} partners, so some neighbours share a partner"
        )

    counts = ", ".join(f"#{idx}: {cnt}" for idx, cnt in sorted(report.partner_counts.items()))
    steps.append(f"  Result: {counts}")

    if report.repaired_moves:
        steps.append(
            f"  Balance repair moved {report.repaired_moves} structure(s) (flagged random)"
        )
    return steps


def explain_partition(reports, n_partners: int, threshold_meters: float) -> List[str]:
    """Explain a full partition, one block per category."""
    total = sum(r.structure_count for r in reports)
    steps = [
        f"Distributing {total} structures among {n_partners} partners; "
        f"structures within {threshold_meters:.0f}m of each other form one site"
    ]
    for report in reports:
        steps.extend(explain_category(report, n_partners))
    return steps
