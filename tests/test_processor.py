"""Tests for the per-group first pass."""

import pytest

from hierarchy_engine.engine.processor import GroupProcessor
from hierarchy_engine.errors import InvariantViolationError
from hierarchy_engine.models.config import EngineConfig
from hierarchy_engine.models.entropy import EntropyClassification
from hierarchy_engine.models.override import OverrideReason
from hierarchy_engine.models.proposal import MatchingTier
from hierarchy_engine.proposals.generator import GenerationResult

from helpers import make_batch, make_rows, uniform_group_rows


def _dominant_with_minority_rows():
    """95 certificates on one configuration, 5 on another, all under one product and plan."""
    rows = uniform_group_rows("G2", 95, brokers=("B1", "B2"))
    rows += uniform_group_rows("G2", 5, brokers=("B3",), start=95)
    return rows


class TestStableGroup:
    def test_identical_configs_yield_one_proposal(self):
        batch = make_batch("G1", uniform_group_rows("G1", 10))
        outcome = GroupProcessor().process(batch)

        assert outcome.classification == EntropyClassification.LOW
        assert len(outcome.bundle.proposals) == 1
        assert outcome.bundle.proposals[0].tier == MatchingTier.SIMPLE
        assert outcome.bundle.overrides == []
        assert len(outcome.bundle.assignments) == 10
        assert outcome.certificate_count == 10

    def test_key_mappings_and_hierarchies(self):
        batch = make_batch("G1", uniform_group_rows("G1", 10, brokers=("B1", "B2")))
        bundle = GroupProcessor().process(batch).bundle

        assert [(m.effective_year, m.product_code, m.plan_code) for m in bundle.key_mappings] == [
            (2024, "*", "*")
        ]
        [hierarchy] = bundle.hierarchies
        assert [p.broker_id for p in hierarchy.participants] == ["B1", "B2"]
        assert bundle.group_ids == ["G1"]


class TestHumanErrorGroup:
    def test_minority_cluster_above_threshold_keeps_its_proposal(self):
        config = EngineConfig(override_cluster_size_threshold=3)
        outcome = GroupProcessor(config).process(make_batch("G2", _dominant_with_minority_rows()))

        assert outcome.classification == EntropyClassification.HUMAN_ERROR
        assert len(outcome.bundle.retained_proposals) == 2
        assert outcome.bundle.overrides == []
        assert sorted(p.certificate_count for p in outcome.bundle.proposals) == [5, 95]

    def test_minority_cluster_below_threshold_is_overridden(self):
        config = EngineConfig(override_cluster_size_threshold=10)
        outcome = GroupProcessor(config).process(make_batch("G2", _dominant_with_minority_rows()))

        assert outcome.classification == EntropyClassification.HUMAN_ERROR
        assert len(outcome.bundle.proposals) == 1
        assert outcome.bundle.proposals[0].certificate_count == 95
        overrides = outcome.bundle.overrides
        assert len(overrides) == 5
        assert {o.reason_code for o in overrides} == {OverrideReason.HUMAN_ERROR}
        assert "5% of group" in overrides[0].non_conformant_reason
        assert len(outcome.bundle.assignments) == 95

    def test_overridden_hierarchies_are_staged(self):
        config = EngineConfig(override_cluster_size_threshold=10)
        bundle = GroupProcessor(config).process(make_batch("G2", _dominant_with_minority_rows())).bundle
        writers = {h.writing_broker_id for h in bundle.hierarchies}
        assert writers == {"B1", "B3"}


class TestBusinessDrivenGroup:
    def test_all_unique_configs_are_overridden(self):
        rows = []
        for i in range(20):
            rows += make_rows(f"C{i:02d}", group_id="G3", splits=[(100.0, [f"B{i}"])])
        outcome = GroupProcessor().process(make_batch("G3", rows))

        assert outcome.classification == EntropyClassification.BUSINESS_DRIVEN
        assert outcome.entropy.simple_entropy == 1.0
        assert outcome.bundle.proposals == []
        assert outcome.bundle.key_mappings == []
        assert len(outcome.bundle.overrides) == 20
        assert {o.reason_code for o in outcome.bundle.overrides} == {OverrideReason.BUSINESS_DRIVEN}


class TestInvalidInput:
    @pytest.mark.parametrize("group_id", [None, "0", "G000"])
    def test_invalid_group_overrides_every_certificate(self, group_id):
        rows = uniform_group_rows(group_id, 4)
        outcome = GroupProcessor().process(make_batch(group_id, rows))

        assert outcome.entropy is None
        assert outcome.bundle.proposals == []
        assert len(outcome.bundle.overrides) == 4
        assert {o.reason_code for o in outcome.bundle.overrides} == {OverrideReason.INVALID_GROUP}
        assert outcome.bundle.group_ids == [group_id]

    def test_invalid_split_is_overridden_and_excluded_from_clustering(self):
        rows = uniform_group_rows("G1", 10)
        rows += make_rows("BAD1", group_id="G1", splits=[(50.0, ["B1"]), (30.0, ["B2"])])
        outcome = GroupProcessor().process(make_batch("G1", rows))

        assert outcome.classification == EntropyClassification.LOW
        assert outcome.entropy.total_records == 10
        invalid = [o for o in outcome.bundle.overrides if o.certificate_id == "BAD1"]
        assert len(invalid) == 2
        assert invalid[0].reason_code == OverrideReason.INVALID_SPLIT
        assert "80%" in invalid[0].non_conformant_reason
        assert "BAD1" not in {a.certificate_id for a in outcome.bundle.assignments}

    def test_incomplete_certificate_is_overridden_and_excluded_from_clustering(self):
        rows = uniform_group_rows("G1", 10)
        rows += make_rows("C9999", group_id="G1", splits=[(100.0, ["B1"])])
        batch = make_batch("G1", rows)
        batch.incomplete_certificate_ids = ["C9999"]

        outcome = GroupProcessor().process(batch)

        [override] = outcome.bundle.overrides
        assert override.certificate_id == "C9999"
        assert override.reason_code == OverrideReason.INVALID_SPLIT
        assert override.non_conformant_reason == (
            "invalid split configuration: incomplete record set"
        )
        assert outcome.entropy.total_records == 10
        assert "C9999" not in {a.certificate_id for a in outcome.bundle.assignments}

    def test_every_certificate_accounted_for(self):
        rows = _dominant_with_minority_rows()
        rows += make_rows("BAD1", group_id="G2", splits=[(90.0, ["B1"])])
        config = EngineConfig(override_cluster_size_threshold=10)
        outcome = GroupProcessor(config).process(make_batch("G2", rows))

        assigned = {a.certificate_id for a in outcome.bundle.assignments}
        overridden = {o.certificate_id for o in outcome.bundle.overrides}
        assert assigned | overridden == set(outcome.certificates)
        assert not assigned & overridden


class TestCoverageCheck:
    def test_unresolved_certificates_raise(self, monkeypatch):
        processor = GroupProcessor()
        monkeypatch.setattr(
            processor.generator, "generate",
            lambda group_id, configs: GenerationResult([], {}, []),
        )
        with pytest.raises(InvariantViolationError) as exc_info:
            processor.process(make_batch("G1", uniform_group_rows("G1", 3)))
        assert exc_info.value.group_id == "G1"
        assert exc_info.value.details["unresolved"] == ["C0000", "C0001", "C0002"]


class TestConsolidationInGroup:
    def test_assignments_follow_merged_proposals(self):
        # B1 straddles the year boundary, B2 competes with it in 2024
        rows = uniform_group_rows("G1", 6, brokers=("B1",), effective="2023-12-31")
        rows += uniform_group_rows("G1", 6, brokers=("B1",), start=6, effective="2024-01-01")
        rows += uniform_group_rows("G1", 6, brokers=("B2",), start=12, effective="2024-06-01")
        outcome = GroupProcessor().process(make_batch("G1", rows))

        assert outcome.classification == EntropyClassification.HUMAN_ERROR
        retained_ids = {p.id for p in outcome.bundle.retained_proposals}
        consumed = [p for p in outcome.bundle.proposals if not p.is_retained]
        assert len(retained_ids) == 2
        assert len(consumed) == 1
        assert consumed[0].consumed_by_proposal_id in retained_ids
        assert {a.proposal_id for a in outcome.bundle.assignments} == retained_ids
        assert {m.proposal_id for m in outcome.bundle.key_mappings} == retained_ids
