"""SQLite-backed AssignmentStore. Each public write is one BEGIN IMMEDIATE transaction."""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from models.distribution import Assignment, Distribution, compute_partner_counts
from models.audit import AuditEntry
from data.records import (
    assignment_from_record,
    assignment_to_record,
    canonical_json,
    distribution_from_record,
    distribution_to_record,
)
from data.store import check_rows, check_single_predicate
from engine.errors import InvalidParametersError, NotFoundError, StoreUnavailableError
from config.defaults import STORE_LOCATOR

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sd_distributions (
    distribution_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    filter_snapshot TEXT NOT NULL,
    scope_key TEXT NOT NULL,
    threshold_meters REAL NOT NULL,
    partner_names TEXT NOT NULL,
    partner_counts TEXT NOT NULL,
    total INTEGER NOT NULL,
    active INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    random_seed TEXT,
    partner_a_name TEXT,
    partner_b_name TEXT,
    partner_a_count INTEGER NOT NULL DEFAULT 0,
    partner_b_count INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS ix_sd_distributions_scope
    ON sd_distributions (scope_key, active);
CREATE TABLE IF NOT EXISTS sd_assignments (
    assignment_id TEXT PRIMARY KEY,
    distribution_id TEXT NOT NULL REFERENCES sd_distributions (distribution_id) ON DELETE CASCADE,
    structure_id NOT NULL,
    partner_index INTEGER NOT NULL,
    is_random INTEGER NOT NULL DEFAULT 0,
    category TEXT,
    region TEXT,
    site_group TEXT,
    swap_count INTEGER NOT NULL DEFAULT 0,
    UNIQUE (distribution_id, structure_id)
);
CREATE INDEX IF NOT EXISTS ix_sd_assignments_distribution
    ON sd_assignments (distribution_id, category, region);
CREATE TABLE IF NOT EXISTS sd_audit_log (
    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    action TEXT NOT NULL,
    distribution_id TEXT NOT NULL,
    structure_id TEXT,
    field_changed TEXT NOT NULL,
    old_value TEXT NOT NULL,
    new_value TEXT NOT NULL,
    rationale TEXT NOT NULL DEFAULT ''
);
"""

_HEADER_COLUMNS = [
    "distribution_id", "name", "filter_snapshot", "scope_key", "threshold_meters",
    "partner_names", "partner_counts", "total", "active", "created_at", "updated_at",
    "random_seed", "partner_a_name", "partner_b_name", "partner_a_count", "partner_b_count",
]

_ITEM_COLUMNS = [
    "assignment_id", "distribution_id", "structure_id", "partner_index", "is_random",
    "category", "region", "site_group", "swap_count",
]


def _sqlite_path(locator: str) -> str:
    if locator.startswith("sqlite:///"):
        return locator[len("sqlite:///"):]
    if locator.startswith("sqlite://"):
        return locator[len("sqlite://"):]
    return locator


def _header_row(distribution: Distribution) -> Dict[str, Any]:
    record = distribution_to_record(distribution)
    record["filter_snapshot"] = canonical_json(record["filter_snapshot"])
    record["partner_names"] = canonical_json(record["partner_names"])
    record["partner_counts"] = canonical_json(record["partner_counts"])
    record["active"] = 1 if record["active"] else 0
    return record


def _item_row(assignment: Assignment) -> Dict[str, Any]:
    record = assignment_to_record(assignment)
    record["is_random"] = 1 if record.pop("random") else 0
    return record


class SqliteAssignmentStore:
    """AssignmentStore over a SQLite file (or ":memory:")."""

    def __init__(self, locator: Any = STORE_LOCATOR):
        self.path = _sqlite_path(str(locator))
        self._shared: Optional[sqlite3.Connection] = None
        if self.path == ":memory:":
            self._shared = self._open()
        else:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    # --- Connections ---

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._shared or self._open()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open store at {self.path}: {exc}") from exc
        try:
            yield conn
        finally:
            if conn is not self._shared:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreUnavailableError(f"Store write failed: {exc}") from exc
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            try:
                yield conn
            except sqlite3.Error as exc:
                raise StoreUnavailableError(f"Store read failed: {exc}") from exc

    def _init_schema(self):
        with self._connect() as conn:
            try:
                conn.executescript(_SCHEMA)
            except sqlite3.Error as exc:
                raise StoreUnavailableError(f"Cannot initialise store: {exc}") from exc

    def close(self):
        if self._shared is not None:
            self._shared.close()
            self._shared = None

    # --- Row helpers (run inside an open transaction) ---

    def _load_header(self, conn: sqlite3.Connection, distribution_id: str) -> Distribution:
        row = conn.execute(
            "SELECT * FROM sd_distributions WHERE distribution_id = ?", (distribution_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Distribution {distribution_id} not found")
        return distribution_from_record(dict(row))

    def _load_items(self, conn: sqlite3.Connection, distribution_id: str) -> List[Assignment]:
        rows = conn.execute(
            "SELECT * FROM sd_assignments WHERE distribution_id = ? ORDER BY rowid",
            (distribution_id,),
        ).fetchall()
        return [assignment_from_record(dict(r)) for r in rows]

    def _insert_header(self, conn: sqlite3.Connection, distribution: Distribution):
        row = _header_row(distribution)
        placeholders = ", ".join("?" for _ in _HEADER_COLUMNS)
        conn.execute(
            f"INSERT INTO sd_distributions ({', '.join(_HEADER_COLUMNS)}) VALUES ({placeholders})",
            [row[c] for c in _HEADER_COLUMNS],
        )

    def _write_header(self, conn: sqlite3.Connection, distribution: Distribution):
        row = _header_row(distribution)
        columns = [c for c in _HEADER_COLUMNS if c != "distribution_id"]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        conn.execute(
            f"UPDATE sd_distributions SET {assignments} WHERE distribution_id = ?",
            [row[c] for c in columns] + [distribution.distribution_id],
        )

    def _insert_items(self, conn: sqlite3.Connection, assignments: List[Assignment]):
        placeholders = ", ".join("?" for _ in _ITEM_COLUMNS)
        conn.executemany(
            f"INSERT INTO sd_assignments ({', '.join(_ITEM_COLUMNS)}) VALUES ({placeholders})",
            [[_item_row(a)[c] for c in _ITEM_COLUMNS] for a in assignments],
        )

    def _insert_audit(self, conn: sqlite3.Connection, entries: Sequence[AuditEntry]):
        conn.executemany(
            "INSERT INTO sd_audit_log (timestamp, action, distribution_id, structure_id, "
            "field_changed, old_value, new_value, rationale) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (e.timestamp.isoformat(), e.action, e.distribution_id,
                 None if e.structure_id is None else str(e.structure_id),
                 e.field_changed, e.old_value, e.new_value, e.rationale)
                for e in entries
            ],
        )

    def _recount(self, conn: sqlite3.Connection, header: Distribution) -> Distribution:
        rows = conn.execute(
            "SELECT partner_index, COUNT(*) AS n FROM sd_assignments "
            "WHERE distribution_id = ? GROUP BY partner_index",
            (header.distribution_id,),
        ).fetchall()
        counts = compute_partner_counts((), header.partner_count)
        for r in rows:
            counts[int(r["partner_index"])] = int(r["n"])
        header.partner_counts = counts
        header.total = sum(counts.values())
        header.updated_at = datetime.now()
        self._write_header(conn, header)
        return header

    # --- Writes ---

    def save_new(
        self,
        distribution: Distribution,
        assignments: List[Assignment],
        audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        check_rows(distribution.distribution_id, assignments, distribution.partner_count)
        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM sd_distributions WHERE distribution_id = ?",
                (distribution.distribution_id,),
            ).fetchone()
            if exists:
                raise InvalidParametersError(f"Distribution {distribution.distribution_id} already exists")
            self._insert_header(conn, distribution)
            self._insert_items(conn, assignments)
            header = self._recount(conn, distribution_from_record(distribution_to_record(distribution)))
            self._insert_audit(conn, audit)
        logger.debug("Saved distribution %s with %d rows", header.distribution_id, header.total)
        return header

    def replace_items(
        self,
        distribution_id: str,
        new_assignments: List[Assignment],
        header: Optional[Distribution] = None,
        audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        with self._transaction() as conn:
            current = self._load_header(conn, distribution_id)
            target = distribution_from_record(distribution_to_record(header or current))
            target.distribution_id = distribution_id
            check_rows(distribution_id, new_assignments, target.partner_count)

            self._write_header(conn, target)
            conn.execute("DELETE FROM sd_assignments WHERE distribution_id = ?", (distribution_id,))
            self._insert_items(conn, new_assignments)
            self._insert_audit(conn, audit)
            return self._recount(conn, target)

    def update_items(
        self,
        distribution_id: str,
        assignments: List[Assignment],
        audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        with self._transaction() as conn:
            header = self._load_header(conn, distribution_id)
            for a in assignments:
                if a.distribution_id != distribution_id:
                    raise InvalidParametersError(
                        f"Assignment {a.assignment_id} belongs to {a.distribution_id}, not {distribution_id}"
                    )
                if not 0 <= a.partner_index < header.partner_count:
                    raise InvalidParametersError(
                        f"Assignment {a.assignment_id}: partner slot {a.partner_index} out of range"
                    )
                row = _item_row(a)
                cur = conn.execute(
                    "UPDATE sd_assignments SET partner_index = ?, is_random = ?, category = ?, "
                    "region = ?, site_group = ?, swap_count = ? "
                    "WHERE assignment_id = ? AND distribution_id = ?",
                    (row["partner_index"], row["is_random"], row["category"], row["region"],
                     row["site_group"], row["swap_count"], a.assignment_id, distribution_id),
                )
                if cur.rowcount != 1:
                    raise NotFoundError(f"Assignment {a.assignment_id} not in distribution {distribution_id}")
            self._insert_audit(conn, audit)
            return self._recount(conn, header)

    def delete_distribution(self, distribution_id: str, audit: Sequence[AuditEntry] = ()) -> None:
        with self._transaction() as conn:
            self._load_header(conn, distribution_id)
            conn.execute("DELETE FROM sd_assignments WHERE distribution_id = ?", (distribution_id,))
            conn.execute("DELETE FROM sd_distributions WHERE distribution_id = ?", (distribution_id,))
            self._insert_audit(conn, audit)

    def delete_items_where(
        self,
        distribution_id: str,
        category: Optional[str] = None,
        region: Optional[str] = None,
        audit: Sequence[AuditEntry] = (),
    ) -> int:
        check_single_predicate(category, region)
        column, value = ("category", category) if category is not None else ("region", region)
        with self._transaction() as conn:
            header = self._load_header(conn, distribution_id)
            cur = conn.execute(
                f"DELETE FROM sd_assignments WHERE distribution_id = ? AND {column} = ?",
                (distribution_id, value),
            )
            removed = cur.rowcount
            self._recount(conn, header)
            self._insert_audit(conn, audit)
        return removed

    def set_active(
        self, distribution_id: str, scope: str, audit: Sequence[AuditEntry] = (),
    ) -> Distribution:
        with self._transaction() as conn:
            header = self._load_header(conn, distribution_id)
            conn.execute(
                "UPDATE sd_distributions SET active = 0 "
                "WHERE scope_key = ? AND distribution_id != ? AND active = 1",
                (scope, distribution_id),
            )
            conn.execute(
                "UPDATE sd_distributions SET active = 1 WHERE distribution_id = ?", (distribution_id,)
            )
            self._insert_audit(conn, audit)
        header.active = True
        return header

    def set_inactive(self, distribution_id: str, audit: Sequence[AuditEntry] = ()) -> Distribution:
        with self._transaction() as conn:
            header = self._load_header(conn, distribution_id)
            conn.execute(
                "UPDATE sd_distributions SET active = 0 WHERE distribution_id = ?", (distribution_id,)
            )
            self._insert_audit(conn, audit)
        header.active = False
        return header

    # --- Reads ---

    def get_distribution(self, distribution_id: str) -> Optional[Distribution]:
        with self._reading() as conn:
            try:
                return self._load_header(conn, distribution_id)
            except NotFoundError:
                return None

    def list_distributions(self, scope: Optional[str] = None) -> List[Distribution]:
        with self._reading() as conn:
            if scope is None:
                rows = conn.execute("SELECT * FROM sd_distributions ORDER BY created_at DESC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sd_distributions WHERE scope_key = ? ORDER BY created_at DESC",
                    (scope,),
                ).fetchall()
        return [distribution_from_record(dict(r)) for r in rows]

    def get_items(self, distribution_id: str) -> List[Assignment]:
        with self._reading() as conn:
            self._load_header(conn, distribution_id)
            return self._load_items(conn, distribution_id)

    # --- Audit ---

    def add_audit_entry(self, entry: AuditEntry) -> None:
        with self._transaction() as conn:
            self._insert_audit(conn, [entry])

    def get_audit_log(self, distribution_id: Optional[str] = None) -> List[AuditEntry]:
        with self._reading() as conn:
            if distribution_id is None:
                rows = conn.execute("SELECT * FROM sd_audit_log ORDER BY entry_id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sd_audit_log WHERE distribution_id = ? ORDER BY entry_id",
                    (distribution_id,),
                ).fetchall()
        return [
            AuditEntry(
                timestamp=datetime.fromisoformat(r["timestamp"]),
                action=r["action"],
                distribution_id=r["distribution_id"],
                field_changed=r["field_changed"],
                old_value=r["old_value"],
                new_value=r["new_value"],
                rationale=r["rationale"],
                structure_id=r["structure_id"],
            )
            for r in rows
        ]
