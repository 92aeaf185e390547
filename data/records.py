"""Translation between persisted records and the engine's models.

Older rows carry a fixed two-partner shape (partner_a_name / partner_b_name,
partner_a_count / partner_b_count, partner values "A" / "B"). They are mapped
onto slot indices 0 and 1 here; nothing past this module sees the legacy shape.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from models.distribution import Assignment, Distribution, FilterSnapshot
from config.defaults import ALL_SCOPE, LEGACY_PARTNER_SLOTS


def parse_partner_slot(value: Any) -> int:
    """Partner slot index from 0/1/2..., "0"/"1"/..., or the legacy letters "A"/"B"."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid partner slot: {value!r}")
    if isinstance(value, int):
        slot = value
    else:
        text = str(value).strip()
        if text.upper() in LEGACY_PARTNER_SLOTS:
            return LEGACY_PARTNER_SLOTS[text.upper()]
        try:
            slot = int(text)
        except ValueError:
            raise ValueError(f"Invalid partner slot: {value!r}") from None
    if slot < 0:
        raise ValueError(f"Invalid partner slot: {value!r}")
    return slot


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _legacy_filter(record: Dict[str, Any], key: str) -> List[str]:
    value = record.get(key)
    if value is None or value == "" or value == ALL_SCOPE:
        return []
    return [str(value)]


def filter_snapshot_from_record(record: Dict[str, Any]) -> FilterSnapshot:
    snapshot = _maybe_json(record.get("filter_snapshot"))
    if snapshot:
        return FilterSnapshot(
            categories=list(snapshot.get("categories", [])),
            regions=list(snapshot.get("regions", [])),
            localities=list(snapshot.get("localities", [])),
            tags=list(snapshot.get("tags", [])),
        )
    return FilterSnapshot(
        categories=_legacy_filter(record, "size_filter"),
        regions=_legacy_filter(record, "municipality_filter"),
        localities=_legacy_filter(record, "city_filter"),
        tags=_legacy_filter(record, "ad_type_filter"),
    )


def filter_snapshot_to_record(snapshot: FilterSnapshot) -> Dict[str, List[str]]:
    return {
        "categories": list(snapshot.categories),
        "regions": list(snapshot.regions),
        "localities": list(snapshot.localities),
        "tags": list(snapshot.tags),
    }


def distribution_from_record(record: Dict[str, Any]) -> Distribution:
    """Build a Distribution from either the indexed or the legacy two-partner shape."""
    names = _maybe_json(record.get("partner_names"))
    if not names:
        names = [record.get("partner_a_name") or "", record.get("partner_b_name") or ""]
    names = [str(n) for n in names]

    raw_counts = _maybe_json(record.get("partner_counts"))
    counts = {i: 0 for i in range(len(names))}
    if raw_counts:
        for key, value in raw_counts.items():
            slot = parse_partner_slot(key)
            counts[slot] = counts.get(slot, 0) + int(value or 0)
    else:
        counts[0] = int(record.get("partner_a_count") or 0)
        counts[1] = int(record.get("partner_b_count") or 0)

    total = record.get("total", record.get("total_billboards"))
    threshold = record.get("threshold_meters", record.get("distance_threshold"))
    active = record.get("active", record.get("is_active", False))

    return Distribution(
        distribution_id=str(record.get("distribution_id") or record["id"]),
        name=str(record.get("name") or ""),
        filter_snapshot=filter_snapshot_from_record(record),
        threshold_meters=float(threshold or 0),
        partner_names=names,
        partner_counts=counts,
        total=int(total if total is not None else sum(counts.values())),
        active=bool(active),
        created_at=_parse_time(record.get("created_at")) or datetime.now(),
        random_seed=record.get("random_seed"),
        updated_at=_parse_time(record.get("updated_at")),
    )


def distribution_to_record(distribution: Distribution) -> Dict[str, Any]:
    """Persisted shape; also fills the legacy slot-0/1 columns for older readers."""
    names = distribution.partner_names
    counts = distribution.partner_counts
    return {
        "distribution_id": distribution.distribution_id,
        "name": distribution.name,
        "filter_snapshot": filter_snapshot_to_record(distribution.filter_snapshot),
        "scope_key": distribution.scope_key,
        "threshold_meters": float(distribution.threshold_meters),
        "partner_names": list(names),
        "partner_counts": {str(k): int(v) for k, v in sorted(counts.items())},
        "total": int(distribution.total),
        "active": bool(distribution.active),
        "created_at": distribution.created_at.isoformat(),
        "updated_at": distribution.updated_at.isoformat() if distribution.updated_at else None,
        "random_seed": distribution.random_seed,
        "partner_a_name": names[0] if len(names) > 0 else None,
        "partner_b_name": names[1] if len(names) > 1 else None,
        "partner_a_count": int(counts.get(0, 0)),
        "partner_b_count": int(counts.get(1, 0)),
    }


def assignment_from_record(record: Dict[str, Any]) -> Assignment:
    partner = record.get("partner_index", record.get("partner"))
    structure_id = record.get("structure_id", record.get("billboard_id"))
    return Assignment(
        assignment_id=str(record.get("assignment_id") or record["id"]),
        distribution_id=str(record["distribution_id"]),
        structure_id=structure_id,
        partner_index=parse_partner_slot(partner),
        random=bool(record.get("random", record.get("is_random", False))),
        category=str(record.get("category", record.get("size_group")) or ""),
        region=str(record.get("region", record.get("municipality_group")) or ""),
        site_group=str(record.get("site_group") or ""),
        swap_count=int(record.get("swap_count") or 0),
    )


def assignment_to_record(assignment: Assignment) -> Dict[str, Any]:
    return {
        "assignment_id": assignment.assignment_id,
        "distribution_id": assignment.distribution_id,
        "structure_id": assignment.structure_id,
        "partner_index": int(assignment.partner_index),
        "random": bool(assignment.random),
        "category": assignment.category,
        "region": assignment.region,
        "site_group": assignment.site_group,
        "swap_count": int(assignment.swap_count),
    }


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
