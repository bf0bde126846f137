"""Tests for the Signature & Cluster Builder and the hash contract."""

import re

import pytest

from hierarchy_engine.clustering import builder as builder_module
from hierarchy_engine.clustering.builder import (
    ClusterBuilder,
    HashRegistry,
    canonical_json,
    collect_broker_assignments,
    compute_config_hash,
    compute_hierarchy_hash,
    fingerprint,
)
from hierarchy_engine.errors import HashCollisionError
from hierarchy_engine.models.hierarchy import HierarchyTier
from hierarchy_engine.models.records import CertificateRecord

from helpers import make_records, make_rows

HEX64 = re.compile(r"^[0-9A-F]{64}$")


def _tiers(*brokers: str):
    return [
        HierarchyTier(level=i, broker_id=b, schedule_code=f"SCH-{b}")
        for i, b in enumerate(brokers, start=1)
    ]


class TestHashContract:
    def test_digest_is_64_uppercase_hex(self):
        h = compute_config_hash("G1", [(100.0, _tiers("B1", "B2"))])
        assert HEX64.match(h)

    def test_same_input_same_hash(self):
        a = compute_config_hash("G1", [(60.0, _tiers("B1")), (40.0, _tiers("B2", "B3"))])
        b = compute_config_hash("G1", [(60.0, _tiers("B1")), (40.0, _tiers("B2", "B3"))])
        assert a == b

    def test_non_canonical_tier_order_changes_hash(self):
        """Tier order is part of the contract: reversing levels is a different config."""
        canonical = _tiers("B1", "B2", "B3")
        reordered = list(reversed(canonical))
        assert compute_config_hash("G1", [(100.0, canonical)]) != compute_config_hash(
            "G1", [(100.0, reordered)]
        )

    def test_ordering_is_by_level_not_broker_id(self):
        """Brokers sorting differently as text must not change the canonical hash."""
        builder = ClusterBuilder()
        rows = make_rows("C1", splits=[(100.0, ["Z9", "A1"])])
        config = builder.build_config([CertificateRecord(**r) for r in rows])
        assert [t.broker_id for t in config.splits[0].tiers] == ["Z9", "A1"]
        assert config.config_hash == compute_config_hash(
            "G1", [(100.0, [
                HierarchyTier(level=1, broker_id="Z9", schedule_code="SCH-Z9"),
                HierarchyTier(level=2, broker_id="A1", schedule_code="SCH-A1"),
            ])]
        )

    def test_split_percent_is_part_of_hash(self):
        assert compute_config_hash("G1", [(50.0, _tiers("B1")), (50.0, _tiers("B2"))]) != \
            compute_config_hash("G1", [(60.0, _tiers("B1")), (40.0, _tiers("B2"))])

    def test_hierarchy_hash_is_group_specific(self):
        assert compute_hierarchy_hash("G1", 100.0, _tiers("B1")) != compute_hierarchy_hash(
            "G2", 100.0, _tiers("B1")
        )

    def test_paid_broker_is_not_hashed(self):
        plain = _tiers("B1")
        assigned = [HierarchyTier(level=1, broker_id="B1", schedule_code="SCH-B1", paid_broker_id="B9")]
        assert compute_config_hash("G1", [(100.0, plain)]) == compute_config_hash(
            "G1", [(100.0, assigned)]
        )

    def test_canonical_json_sorts_keys(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


class TestHashRegistry:
    def test_same_payload_is_not_a_collision(self):
        registry = HashRegistry()
        assert registry.digest("x") == registry.digest("x")
        assert registry.collision_count == 0
        assert len(registry) == 1

    def test_collision_raises_and_is_counted(self, monkeypatch):
        monkeypatch.setattr(builder_module, "sha256_hex", lambda text: "F" * 64)
        registry = HashRegistry()
        registry.digest("first", context="config-C1")
        with pytest.raises(HashCollisionError) as exc_info:
            registry.digest("second", context="config-C2")
        assert registry.collision_count == 1
        assert exc_info.value.code == "HE_HASH_COLLISION"
        assert "config-C2" in exc_info.value.message
        assert exc_info.value.details["payload"] == "second"

    def test_registry_keeps_fingerprints_not_payloads(self):
        registry = HashRegistry()
        payload = "x" * 10_000
        digest = registry.digest(payload)
        assert registry._seen[digest] == fingerprint(payload)
        assert len(registry._seen[digest]) == 32


class TestClusterBuilder:
    def test_input_row_order_does_not_change_hash(self):
        builder = ClusterBuilder()
        rows = make_rows("C1", splits=[(60.0, ["B1", "B2"]), (40.0, ["B3"])])
        records = [CertificateRecord(**r) for r in rows]
        forward = builder.build_config(records)
        backward = builder.build_config(list(reversed(records)))
        assert forward.config_hash == backward.config_hash
        assert [s.split_sequence for s in backward.splits] == [1, 2]

    def test_signature_per_split(self):
        builder = ClusterBuilder()
        config = builder.build_config(
            make_records("C1", splits=[(60.0, ["B1", "B2"]), (40.0, ["B3"])])
        )
        assert len(config.splits) == 2
        assert config.splits[0].split_percent == 60.0
        assert config.splits[0].writing_broker_id == "B1"
        assert config.splits[1].writing_broker_id == "B3"
        assert config.split_total == 100.0

    def test_clusters_by_config_hash(self):
        builder = ClusterBuilder()
        records = []
        for i in range(4):
            records += make_records(f"C{i}", splits=[(100.0, ["B1"])])
        for i in range(4, 6):
            records += make_records(f"C{i}", splits=[(100.0, ["B2"])])

        result = builder.build(records)

        assert result.total_certificates == 6
        assert [c.record_count for c in result.clusters] == [4, 2]
        dominant = result.clusters[0]
        assert dominant.member_certificate_ids == ["C0", "C1", "C2", "C3"]
        assert dominant.representative.certificate_id == "C0"
        assert dominant.scope == [("A", "P1")]

    def test_cluster_scope_uses_wildcard_for_missing_plan(self):
        builder = ClusterBuilder()
        records = make_records("C1", plan=None) + make_records("C2", plan="P2")
        result = builder.build(records)
        assert result.clusters[0].scope == [("A", "*"), ("A", "P2")]

    def test_cluster_date_range(self):
        builder = ClusterBuilder()
        records = (
            make_records("C1", effective="2024-05-01")
            + make_records("C2", effective="2023-01-15")
        )
        cluster = builder.build(records).clusters[0]
        assert cluster.date_from.isoformat() == "2023-01-15"
        assert cluster.date_to.isoformat() == "2024-05-01"

    def test_empty_input(self):
        result = ClusterBuilder().build([])
        assert result.clusters == []
        assert result.total_certificates == 0


class TestBrokerAssignments:
    def test_most_recent_assignment_per_source_broker(self):
        builder = ClusterBuilder()
        older = make_rows("C1", effective="2023-01-01")
        newer = make_rows("C2", effective="2024-01-01")
        older[0]["paid_broker_id"] = "P-OLD"
        newer[0]["paid_broker_id"] = "P-NEW"
        configs = builder.build_configs([CertificateRecord(**r) for r in older + newer])

        assignments = collect_broker_assignments(configs)

        assert len(assignments) == 1
        assert assignments[0].source_broker_id == "B1"
        assert assignments[0].recipient_broker_id == "P-NEW"

    def test_paid_to_self_is_not_an_assignment(self):
        rows = make_rows("C1")
        rows[0]["paid_broker_id"] = "B1"
        configs = ClusterBuilder().build_configs([CertificateRecord(**r) for r in rows])
        assert collect_broker_assignments(configs) == []
