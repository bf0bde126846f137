"""
Staging Writer: idempotent persistence of run bundles.

Behavioral Contract:
- write(bundle) replaces, for every group listed in bundle.group_ids, all
  previously staged proposals, key mappings, overrides and certificate
  assignments of that group. Writing the same bundle twice leaves the
  same rows.
- Hierarchy versions are shared across groups and upserted by id.
- Broker assignments are upserted by source broker, most recent wins.
- The core never talks to storage directly; it only hands bundles over.
"""

import json
import logging
import sqlite3
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from hierarchy_engine.models.hierarchy import BrokerAssignment, HierarchyVersion
from hierarchy_engine.models.override import PolicyHierarchyAssignment
from hierarchy_engine.models.proposal import (
    CertificateAssignment,
    Proposal,
    ProposalKeyMapping,
    proposal_sort_key,
)
from hierarchy_engine.models.staging import StagingBundle
from hierarchy_engine.staging.retry import RetryPolicy

logger = logging.getLogger(__name__)


class StagingWriter(Protocol):
    """Persists bundles with replace-by-natural-key semantics."""

    def write(self, bundle: StagingBundle) -> None: ...


class StagedReader(Protocol):
    """What the auditor and API need to read back."""

    def proposals(self, group_id: Optional[str] = None) -> List[Proposal]: ...

    def key_mappings(self, group_id: Optional[str] = None) -> List[ProposalKeyMapping]: ...

    def overrides(self, group_id: Optional[str] = None) -> List[PolicyHierarchyAssignment]: ...


class StagingStore(StagingWriter, StagedReader, Protocol):
    """A staging area that can be written and read back, as both writers here are."""


class InMemoryStagingWriter:
    """Dict-backed staging area, keyed by natural key."""

    def __init__(self):
        self._proposals: Dict[str, Proposal] = {}
        self._key_mappings: Dict[Tuple, ProposalKeyMapping] = {}
        self._hierarchies: Dict[str, HierarchyVersion] = {}
        self._overrides: Dict[str, PolicyHierarchyAssignment] = {}
        self._assignments: Dict[str, CertificateAssignment] = {}
        self._broker_assignments: Dict[str, BrokerAssignment] = {}
        self.bundles_written = 0

    def write(self, bundle: StagingBundle) -> None:
        groups = set(bundle.group_ids)
        self._proposals = {
            k: v for k, v in self._proposals.items() if v.group_id not in groups
        }
        self._key_mappings = {
            k: v for k, v in self._key_mappings.items() if v.group_id not in groups
        }
        self._overrides = {
            k: v for k, v in self._overrides.items() if v.group_id not in groups
        }
        self._assignments = {
            k: v for k, v in self._assignments.items() if v.group_id not in groups
        }

        for p in bundle.proposals:
            self._proposals[p.id] = p
        for m in bundle.key_mappings:
            self._key_mappings[m.natural_key] = m
        for h in bundle.hierarchies:
            self._hierarchies[h.id] = h
        for o in bundle.overrides:
            self._overrides[o.id] = o
        for a in bundle.assignments:
            self._assignments[a.certificate_id] = a
        for b in bundle.broker_assignments:
            existing = self._broker_assignments.get(b.source_broker_id)
            if existing is None or b.effective_date >= existing.effective_date:
                self._broker_assignments[b.source_broker_id] = b
        self.bundles_written += 1

    def proposals(self, group_id: Optional[str] = None) -> List[Proposal]:
        rows = [p for p in self._proposals.values() if group_id is None or p.group_id == group_id]
        return sorted(rows, key=lambda p: proposal_sort_key(p.id))

    def key_mappings(self, group_id: Optional[str] = None) -> List[ProposalKeyMapping]:
        return [
            self._key_mappings[k] for k in sorted(self._key_mappings)
            if group_id is None or self._key_mappings[k].group_id == group_id
        ]

    def overrides(self, group_id: Optional[str] = None) -> List[PolicyHierarchyAssignment]:
        rows = [o for o in self._overrides.values() if group_id is None or o.group_id == group_id]
        return sorted(rows, key=lambda o: (o.certificate_id, o.split_sequence))

    def hierarchies(self) -> List[HierarchyVersion]:
        return [self._hierarchies[k] for k in sorted(self._hierarchies)]

    def assignments(self) -> List[CertificateAssignment]:
        return [self._assignments[k] for k in sorted(self._assignments)]

    def broker_assignments(self) -> List[BrokerAssignment]:
        return [self._broker_assignments[k] for k in sorted(self._broker_assignments)]


class SqliteStagingWriter:
    """
    SQLite staging store. One transaction per bundle, retried under the
    writer's RetryPolicy on sqlite3.OperationalError (e.g. a locked database).
    """

    def __init__(self, db_path: str = ":memory:", retry_policy: Optional[RetryPolicy] = None):
        self.db_path = db_path
        self.retry_policy = retry_policy or RetryPolicy()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the staging tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS stg_proposals (
                id TEXT PRIMARY KEY,
                group_id TEXT,
                split_config_hash TEXT NOT NULL,
                status TEXT NOT NULL,
                consumed_by_proposal_id TEXT,
                effective_from TEXT NOT NULL,
                effective_to TEXT NOT NULL,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_stg_proposals_group ON stg_proposals(group_id);

            CREATE TABLE IF NOT EXISTS stg_proposal_key_mapping (
                group_id TEXT,
                effective_year INTEGER NOT NULL,
                product_code TEXT NOT NULL,
                plan_code TEXT NOT NULL,
                proposal_id TEXT NOT NULL,
                split_config_hash TEXT NOT NULL,
                PRIMARY KEY (group_id, effective_year, product_code, plan_code, proposal_id)
            );

            CREATE TABLE IF NOT EXISTS stg_hierarchies (
                id TEXT PRIMARY KEY,
                hierarchy_hash TEXT NOT NULL,
                record_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stg_policy_hierarchy_assignments (
                id TEXT PRIMARY KEY,
                certificate_id TEXT NOT NULL,
                group_id TEXT,
                reason_code TEXT NOT NULL,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_stg_pha_group
                ON stg_policy_hierarchy_assignments(group_id);

            CREATE TABLE IF NOT EXISTS stg_certificate_assignments (
                certificate_id TEXT PRIMARY KEY,
                group_id TEXT,
                proposal_id TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stg_broker_assignments (
                source_broker_id TEXT PRIMARY KEY,
                recipient_broker_id TEXT NOT NULL,
                effective_date TEXT NOT NULL
            );
        """)
        self._conn.commit()

    def write(self, bundle: StagingBundle) -> None:
        self.retry_policy.run(
            lambda: self._write_once(bundle),
            retry_on=(sqlite3.OperationalError,),
            context=f"staging write of {len(bundle.group_ids)} groups",
        )

    def _write_once(self, bundle: StagingBundle) -> None:
        with self._conn:
            for group_id in bundle.group_ids:
                for table in (
                    "stg_proposals",
                    "stg_proposal_key_mapping",
                    "stg_policy_hierarchy_assignments",
                    "stg_certificate_assignments",
                ):
                    self._conn.execute(f"DELETE FROM {table} WHERE group_id IS ?", (group_id,))

            self._conn.executemany(
                "INSERT OR REPLACE INTO stg_proposals VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        p.id, p.group_id, p.split_config_hash, p.status.value,
                        p.consumed_by_proposal_id, p.effective_from.isoformat(),
                        p.effective_to.isoformat(), _dump(p),
                    )
                    for p in bundle.proposals
                ],
            )
            self._conn.executemany(
                "INSERT OR REPLACE INTO stg_proposal_key_mapping VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (
                        m.group_id, m.effective_year, m.product_code, m.plan_code,
                        m.proposal_id, m.split_config_hash,
                    )
                    for m in bundle.key_mappings
                ],
            )
            self._conn.executemany(
                "INSERT OR REPLACE INTO stg_hierarchies VALUES (?, ?, ?)",
                [(h.id, h.hierarchy_hash, _dump(h)) for h in bundle.hierarchies],
            )
            self._conn.executemany(
                "INSERT OR REPLACE INTO stg_policy_hierarchy_assignments VALUES (?, ?, ?, ?, ?)",
                [
                    (o.id, o.certificate_id, o.group_id, o.reason_code.value, _dump(o))
                    for o in bundle.overrides
                ],
            )
            self._conn.executemany(
                "INSERT OR REPLACE INTO stg_certificate_assignments VALUES (?, ?, ?)",
                [(a.certificate_id, a.group_id, a.proposal_id) for a in bundle.assignments],
            )
            for b in bundle.broker_assignments:
                self._conn.execute(
                    """
                    INSERT INTO stg_broker_assignments VALUES (?, ?, ?)
                    ON CONFLICT(source_broker_id) DO UPDATE SET
                        recipient_broker_id = excluded.recipient_broker_id,
                        effective_date = excluded.effective_date
                    WHERE excluded.effective_date >= stg_broker_assignments.effective_date
                    """,
                    (b.source_broker_id, b.recipient_broker_id, b.effective_date.isoformat()),
                )
        logger.debug(
            "Staged %d proposals, %d overrides for %d groups",
            len(bundle.proposals), len(bundle.overrides), len(bundle.group_ids),
        )

    def proposals(self, group_id: Optional[str] = None) -> List[Proposal]:
        rows = self._select("stg_proposals", group_id)
        items = [Proposal.model_validate_json(r["record_json"]) for r in rows]
        return sorted(items, key=lambda p: proposal_sort_key(p.id))

    def key_mappings(self, group_id: Optional[str] = None) -> List[ProposalKeyMapping]:
        rows = self._select(
            "stg_proposal_key_mapping",
            group_id,
            order_by="group_id, effective_year, product_code, plan_code, proposal_id",
        )
        return [ProposalKeyMapping(**dict(r)) for r in rows]

    def overrides(self, group_id: Optional[str] = None) -> List[PolicyHierarchyAssignment]:
        rows = self._select("stg_policy_hierarchy_assignments", group_id)
        items = [PolicyHierarchyAssignment.model_validate_json(r["record_json"]) for r in rows]
        return sorted(items, key=lambda o: (o.certificate_id, o.split_sequence))

    def hierarchies(self) -> List[HierarchyVersion]:
        rows = self._conn.execute("SELECT record_json FROM stg_hierarchies ORDER BY id").fetchall()
        return [HierarchyVersion.model_validate_json(r["record_json"]) for r in rows]

    def assignments(self) -> List[CertificateAssignment]:
        rows = self._conn.execute(
            "SELECT certificate_id, group_id, proposal_id FROM stg_certificate_assignments "
            "ORDER BY certificate_id"
        ).fetchall()
        return [CertificateAssignment(**dict(r)) for r in rows]

    def broker_assignments(self) -> List[BrokerAssignment]:
        rows = self._conn.execute(
            "SELECT * FROM stg_broker_assignments ORDER BY source_broker_id"
        ).fetchall()
        return [BrokerAssignment(**dict(r)) for r in rows]

    def count(self, table: str) -> int:
        row = self._conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}").fetchone()
        return row["cnt"]

    def _select(
        self, table: str, group_id: Optional[str], order_by: str = "rowid"
    ) -> Iterable[sqlite3.Row]:
        if group_id is None:
            return self._conn.execute(f"SELECT * FROM {table} ORDER BY {order_by}").fetchall()
        return self._conn.execute(
            f"SELECT * FROM {table} WHERE group_id = ? ORDER BY {order_by}", (group_id,)
        ).fetchall()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()


def _dump(model) -> str:
    return json.dumps(model.model_dump(mode="json"), sort_keys=True, default=str)
