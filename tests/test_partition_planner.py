"""Tests for the partition algorithm and the PartitionPlanner."""

import sys
import os
import math
import random
import sqlite3
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from models.structure import Structure
from models.distribution import FilterSnapshot
from engine.errors import (
    EmptyInputError, InvalidParametersError, NotFoundError, StaleReferenceError, StoreUnavailableError,
)
from engine.partition import PlannedItem, plan_partition, repair_balance
from engine.planner import InMemoryCatalog, PartitionPlanner, default_distribution_name
from engine.summary import category_partner_counts
from data.store import InMemoryAssignmentStore
from data.sqlite_store import SqliteAssignmentStore

BASE_LAT, BASE_LNG = 32.8872, 13.1913
PARTNERS = ["Al Noor", "Sahara Media"]


def make_structure(sid, north_m=0.0, east_m=0.0, category="12x4", region="Central", located=True):
    if not located:
        return Structure(sid, category, region)
    lat = BASE_LAT + north_m / 111195.0
    lng = BASE_LNG + east_m / (111195.0 * math.cos(math.radians(BASE_LAT)))
    return Structure(sid, category, region, "Tripoli", "Billboard", lat, lng)


def make_catalog(count=120, seed=1, categories=("13x5", "12x4", "8x3"), regions=("Central", "Janzour")):
    rng = random.Random(seed)
    return [
        make_structure(
            i, rng.uniform(-3000, 3000), rng.uniform(-3000, 3000),
            category=rng.choice(categories), region=rng.choice(regions),
        )
        for i in range(1, count + 1)
    ]


class FailingAuditStore(SqliteAssignmentStore):
    def _insert_audit(self, conn, entries):
        if entries:
            raise sqlite3.OperationalError("database is locked")
        super()._insert_audit(conn, entries)


def make_planner(structures=()):
    store = InMemoryAssignmentStore()
    return PartitionPlanner(store, catalog=InMemoryCatalog(structures)), store


def assert_balanced(assignments, n_partners):
    for category, counts in category_partner_counts(assignments, n_partners).items():
        assert max(counts.values()) - min(counts.values()) <= 1, category


def signature(assignments):
    return sorted((a.structure_id, a.partner_index, a.random) for a in assignments)


class TestPlanPartition:
    def test_counts_add_up(self):
        structures = make_catalog()
        plan = plan_partition(structures, 400, 3, random.Random("s"))
        counts = plan.partner_counts(3)
        assert sum(counts.values()) == len(plan.items) == len(structures)

    def test_single_cluster_two_partners(self):
        structures = [make_structure(i, east_m=i * 20) for i in range(10)]
        plan = plan_partition(structures, 1000, 2, random.Random("s"))
        assert plan.category_reports[0].cluster_count == 1
        assert plan.partner_counts(2) == {0: 5, 1: 5}

    def test_eleventh_structure_differs_by_one(self):
        structures = [make_structure(i, east_m=i * 20) for i in range(11)]
        counts = plan_partition(structures, 1000, 2, random.Random("s")).partner_counts(2)
        assert sorted(counts.values()) == [5, 6]

    def test_close_pair_lands_on_different_partners(self):
        structures = [make_structure(1), make_structure(2, north_m=1000)]
        plan = plan_partition(structures, 2000, 2, random.Random("s"))
        assert plan.category_reports[0].cluster_count == 1
        assert plan.items[0].partner_index != plan.items[1].partner_index

    def test_far_pair_forms_two_clusters(self):
        structures = [make_structure(1), make_structure(2, north_m=1000)]
        plan = plan_partition(structures, 100, 2, random.Random("s"))
        assert plan.category_reports[0].cluster_count == 2
        assert sorted(plan.partner_counts(2).values()) == [1, 1]

    def test_cluster_not_larger_than_partners_is_spread(self):
        # three tight groups of three; every group must use all three partners
        structures = []
        for g in range(3):
            for k in range(3):
                structures.append(make_structure(g * 10 + k, north_m=g * 5000, east_m=k * 30))
        plan = plan_partition(structures, 100, 3, random.Random("s"))
        by_site = {}
        for item in plan.items:
            by_site.setdefault(item.site_group, set()).add(item.partner_index)
        assert len(by_site) == 3
        assert all(partners == {0, 1, 2} for partners in by_site.values())

    def test_balanced_per_category(self):
        structures = make_catalog(count=301, seed=4)
        for n in (2, 3, 5):
            plan = plan_partition(structures, 600, n, random.Random("s"))
            for report in plan.category_reports:
                counts = report.partner_counts.values()
                assert max(counts) - min(counts) <= 1

    def test_category_remainders_go_to_least_loaded_partner(self):
        structures = [make_structure(1, category="13x5"), make_structure(2, category="8x3", north_m=9000)]
        plan = plan_partition(structures, 100, 2, random.Random("s"))
        assert sorted(item.partner_index for item in plan.items) == [0, 1]

    def test_unlocated_structures_are_balanced(self):
        structures = [make_structure(i, located=False) for i in range(7)]
        plan = plan_partition(structures, 100, 3, random.Random("s"))
        assert sorted(plan.partner_counts(3).values()) == [2, 2, 3]
        assert plan.category_reports[0].unlocated == 7

    def test_blank_category_grouped_as_unknown(self):
        plan = plan_partition([make_structure(1, category="")], 100, 2, random.Random("s"))
        assert plan.category_reports[0].category == "unknown"

    def test_site_group_label(self):
        plan = plan_partition([make_structure(1)], 100, 2, random.Random("s"))
        assert plan.items[0].site_group == "12x4_Central_site0"

    def test_deterministic(self):
        structures = make_catalog(seed=8)
        a = plan_partition(structures, 500, 3, random.Random("x"))
        b = plan_partition(list(reversed(structures)), 500, 3, random.Random("x"))
        key = lambda plan: sorted((i.structure.structure_id, i.partner_index, i.random) for i in plan.items)
        assert key(a) == key(b)

    def test_explanation(self):
        plan = plan_partition(make_catalog(count=20), 500, 2, random.Random("s"))
        assert plan.explanation_steps[0].startswith("Distributing 20 structures among 2 partners")
        assert any(step.startswith("Category ") for step in plan.explanation_steps)

    def test_rotation_needs_no_repair(self):
        # round-robin across clusters already keeps every category within one
        plan = plan_partition(make_catalog(count=233, seed=21), 700, 4, random.Random("s"))
        assert all(report.repaired_moves == 0 for report in plan.category_reports)
        assert not any(item.random for item in plan.items)
        assert not any("Balance repair" in step for step in plan.explanation_steps)

    def test_empty_input(self):
        with pytest.raises(EmptyInputError):
            plan_partition([], 100, 2, random.Random("s"))

    @pytest.mark.parametrize("threshold,n_partners", [(0, 2), (-5, 2), (float("nan"), 2), (100, 1)])
    def test_invalid_parameters(self, threshold, n_partners):
        with pytest.raises(InvalidParametersError):
            plan_partition([make_structure(1)], threshold, n_partners, random.Random("s"))

    def test_duplicate_ids_rejected(self):
        with pytest.raises(InvalidParametersError):
            plan_partition([make_structure(1), make_structure(1, east_m=10)], 100, 2, random.Random("s"))


class TestRepairBalance:
    def test_restores_balance_and_flags_moves(self):
        items = [PlannedItem(make_structure(i, located=False), 0) for i in range(6)]
        moves = repair_balance(items, 3, {}, random.Random("seed"))
        counts = {p: sum(1 for it in items if it.partner_index == p) for p in range(3)}
        assert counts == {0: 2, 1: 2, 2: 2}
        assert moves == 4
        assert sum(1 for it in items if it.random) == 4
        assert all(not it.random for it in items if it.partner_index == 0)

    def test_prefers_lowest_conflict(self):
        x1, x2, x3, y = (make_structure(s, located=False) for s in ("x1", "x2", "x3", "y"))
        items = [PlannedItem(x1, 0), PlannedItem(x2, 0), PlannedItem(x3, 0), PlannedItem(y, 1)]
        adjacency = {"x1": {"y"}, "x2": {"y"}, "y": {"x1", "x2"}, "x3": set()}
        assert repair_balance(items, 2, adjacency, random.Random("seed")) == 1
        assert items[2].partner_index == 1 and items[2].random
        assert items[0].partner_index == 0 and items[1].partner_index == 0

    def test_seeded_ties_are_reproducible(self):
        def run(seed):
            items = [PlannedItem(make_structure(i, located=False), 0) for i in range(9)]
            repair_balance(items, 3, {}, random.Random(seed))
            return [(it.structure.structure_id, it.partner_index) for it in items]
        assert run("abc") == run("abc")

    def test_no_moves_when_balanced(self):
        items = [PlannedItem(make_structure(i, located=False), i % 2) for i in range(5)]
        assert repair_balance(items, 2, {}, random.Random(1)) == 0
        assert not any(it.random for it in items)


class TestGenerate:
    def test_generate_persists_inactive_distribution(self):
        structures = make_catalog(count=50)
        planner, store = make_planner(structures)
        dist, assignments = planner.generate(structures, 500, PARTNERS)

        assert dist.active is False
        assert dist.total == len(assignments) == 50
        assert sum(dist.partner_counts.values()) == dist.total
        assert dist.partner_names == PARTNERS
        assert dist.random_seed
        assert signature(store.get_items(dist.distribution_id)) == signature(assignments)
        assert_balanced(assignments, 2)

    def test_generate_with_more_partners(self):
        structures = make_catalog(count=97, seed=3)
        planner, _ = make_planner(structures)
        dist, assignments = planner.generate(structures, 300, ["A", "B", "C", "D"])
        assert set(dist.partner_counts) == {0, 1, 2, 3}
        assert sum(dist.partner_counts.values()) == 97
        assert_balanced(assignments, 4)

    def test_same_input_same_non_random_assignments(self):
        structures = make_catalog(count=80, seed=6)
        planner, _ = make_planner(structures)
        _, first = planner.generate(structures, 400, PARTNERS, seed="one")
        _, second = planner.generate(structures, 400, PARTNERS, seed="two")
        fixed_first = {a.structure_id: a.partner_index for a in first if not a.random}
        fixed_second = {a.structure_id: a.partner_index for a in second if not a.random}
        shared = set(fixed_first) & set(fixed_second)
        assert shared
        assert all(fixed_first[sid] == fixed_second[sid] for sid in shared)

    def test_filter_snapshot_and_default_name(self):
        structures = [make_structure(i, category="13x5", east_m=i * 500) for i in range(4)]
        planner, _ = make_planner(structures)
        snapshot = FilterSnapshot(categories=["13x5"])
        dist, _ = planner.generate(structures, 100, PARTNERS, filter_snapshot=snapshot)
        assert dist.scope_key == "13x5"
        assert dist.name == default_distribution_name(snapshot, dist.created_at)
        assert dist.name.startswith("Distribution 13x5 - ")

    def test_blank_partner_names_get_defaults(self):
        planner, _ = make_planner()
        dist, _ = planner.generate([make_structure(1), make_structure(2, east_m=900)], 100, ["", "B"])
        assert dist.partner_names == ["Partner 1", "B"]

    def test_defaults(self):
        planner, _ = make_planner()
        dist, _ = planner.generate([make_structure(1), make_structure(2, east_m=900)])
        assert dist.partner_names == ["Partner A", "Partner B"]
        assert dist.threshold_meters == 500.0

    def test_empty_input(self):
        planner, store = make_planner()
        with pytest.raises(EmptyInputError):
            planner.generate([], 100, PARTNERS)
        assert store.list_distributions() == []

    def test_one_partner_rejected(self):
        planner, store = make_planner()
        with pytest.raises(InvalidParametersError):
            planner.generate([make_structure(1)], 100, ["Solo"])
        assert store.list_distributions() == []

    def test_audit_entry(self):
        planner, store = make_planner()
        dist, _ = planner.generate([make_structure(1), make_structure(2, east_m=50)], 100, PARTNERS)
        log = store.get_audit_log(dist.distribution_id)
        assert [e.action for e in log] == ["generate"]

    def test_explain_after_generate(self):
        planner, _ = make_planner()
        assert planner.explain() == []
        planner.generate([make_structure(1), make_structure(2, east_m=50)], 100, PARTNERS)
        assert len(planner.explain()) >= 3


class TestRedistribute:
    def test_keeps_identity_updates_parameters(self):
        structures = make_catalog(count=60, seed=12)
        planner, store = make_planner(structures)
        dist, _ = planner.generate(structures, 500, PARTNERS)

        updated = planner.redistribute(dist.distribution_id, 250, ["A", "B", "C"])
        assert updated.distribution_id == dist.distribution_id
        assert updated.name == dist.name
        assert updated.created_at == dist.created_at
        assert updated.threshold_meters == 250
        assert updated.partner_names == ["A", "B", "C"]
        assert set(updated.partner_counts) == {0, 1, 2}
        assert updated.total == 60

        items = store.get_items(dist.distribution_id)
        assert len(items) == 60
        assert {a.structure_id for a in items} == {s.structure_id for s in structures}
        assert_balanced(items, 3)

    def test_keeps_partner_names_when_not_given(self):
        structures = make_catalog(count=10)
        planner, _ = make_planner(structures)
        dist, _ = planner.generate(structures, 500, PARTNERS)
        assert planner.redistribute(dist.distribution_id, 900).partner_names == PARTNERS
        assert planner.redistribute(dist.distribution_id).threshold_meters == 900

    def test_only_redistributes_remaining_structures(self):
        structures = make_catalog(count=40, seed=2)
        planner, store = make_planner(structures)
        dist, _ = planner.generate(structures[:25], 500, PARTNERS)
        updated = planner.redistribute(dist.distribution_id, 500)
        assert updated.total == 25

    def test_keeps_active_flag(self):
        structures = make_catalog(count=10)
        planner, store = make_planner(structures)
        dist, _ = planner.generate(structures, 500, PARTNERS)
        store.set_active(dist.distribution_id, dist.scope_key)
        assert planner.redistribute(dist.distribution_id, 300).active is True

    def test_stale_reference(self):
        structures = make_catalog(count=10)
        planner, store = make_planner(structures)
        dist, before = planner.generate(structures, 500, PARTNERS)
        planner.catalog.remove(3)

        with pytest.raises(StaleReferenceError) as exc_info:
            planner.redistribute(dist.distribution_id, 500)
        assert exc_info.value.missing_ids == [3]
        assert signature(store.get_items(dist.distribution_id)) == signature(before)

    def test_missing_distribution(self):
        planner, _ = make_planner()
        with pytest.raises(NotFoundError):
            planner.redistribute("nope", 500)

    def test_empty_distribution(self):
        structures = [make_structure(1, category="13x5"), make_structure(2, category="13x5", east_m=900)]
        planner, store = make_planner(structures)
        dist, _ = planner.generate(structures, 100, PARTNERS)
        store.delete_items_where(dist.distribution_id, category="13x5")
        with pytest.raises(EmptyInputError):
            planner.redistribute(dist.distribution_id, 100)

    def test_requires_catalog(self):
        planner = PartitionPlanner(InMemoryAssignmentStore())
        with pytest.raises(InvalidParametersError):
            planner.redistribute("any", 100)

    def test_audit_entry(self):
        structures = make_catalog(count=10)
        planner, store = make_planner(structures)
        dist, _ = planner.generate(structures, 500, PARTNERS)
        planner.redistribute(dist.distribution_id, 500)
        assert [e.action for e in store.get_audit_log(dist.distribution_id)] == ["generate", "redistribute"]


class TestFailedAuditWrite:
    def test_generate_saves_nothing(self, tmp_path):
        store = FailingAuditStore(str(tmp_path / "d.db"))
        planner = PartitionPlanner(store)
        with pytest.raises(StoreUnavailableError):
            planner.generate(make_catalog(count=12), 500, PARTNERS)
        assert store.list_distributions() == []
        assert store.get_audit_log() == []

    def test_redistribute_keeps_previous_rows(self, tmp_path):
        structures = make_catalog(count=12)
        path = str(tmp_path / "d.db")
        dist, before = PartitionPlanner(SqliteAssignmentStore(path)).generate(structures, 500, PARTNERS)

        store = FailingAuditStore(path)
        planner = PartitionPlanner(store, catalog=InMemoryCatalog(structures))
        with pytest.raises(StoreUnavailableError):
            planner.redistribute(dist.distribution_id, 200, ["A", "B", "C"])

        after = store.get_distribution(dist.distribution_id)
        assert after.partner_names == PARTNERS
        assert after.threshold_meters == 500
        assert signature(store.get_items(dist.distribution_id)) == signature(before)
        assert [e.action for e in store.get_audit_log()] == ["generate"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
