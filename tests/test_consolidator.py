"""Tests for the Proposal Consolidator and key mapping generation."""

from datetime import date

from hierarchy_engine.models.config import EngineConfig
from hierarchy_engine.models.proposal import MatchingTier, ProposalStatus
from hierarchy_engine.proposals.consolidator import (
    MERGE_REASON,
    ProposalConsolidator,
    build_key_mappings,
)

from helpers import make_proposal


def _adjacent_pair():
    return [
        make_proposal("PROP-G1-1", date(2024, 1, 1), date(2024, 12, 31)),
        make_proposal("PROP-G1-2", date(2025, 1, 1), date(2025, 12, 31), scope=[("B", "P2")]),
    ]


class TestConsolidation:
    def test_adjacent_ranges_merge_into_earliest(self):
        result = ProposalConsolidator().consolidate(_adjacent_pair())

        assert len(result.retained) == 1
        survivor = result.retained[0]
        assert survivor.id == "PROP-G1-1"
        assert survivor.effective_from == date(2024, 1, 1)
        assert survivor.effective_to == date(2025, 12, 31)
        assert survivor.scope == [("A", "P1"), ("B", "P2")]
        assert survivor.certificate_count == 2

        consumed = result.consumed[0]
        assert consumed.id == "PROP-G1-2"
        assert consumed.status == ProposalStatus.CONSUMED
        assert consumed.consumed_by_proposal_id == "PROP-G1-1"
        assert consumed.consolidation_reason == MERGE_REASON

    def test_inputs_are_not_mutated(self):
        proposals = _adjacent_pair()
        ProposalConsolidator().consolidate(proposals)
        assert proposals[1].status == ProposalStatus.ACTIVE
        assert proposals[0].effective_to == date(2024, 12, 31)

    def test_consolidation_is_idempotent(self):
        consolidator = ProposalConsolidator()
        once = consolidator.consolidate(_adjacent_pair())
        twice = consolidator.consolidate(once.proposals)
        assert [p.model_dump() for p in twice.proposals] == [p.model_dump() for p in once.proposals]
        assert twice.merged_into == {}

    def test_gap_beyond_adjacency_is_not_merged(self):
        proposals = [
            make_proposal("PROP-G1-1", date(2024, 1, 1), date(2024, 6, 30)),
            make_proposal("PROP-G1-2", date(2024, 7, 2), date(2024, 12, 31)),
        ]
        result = ProposalConsolidator().consolidate(proposals)
        assert len(result.retained) == 2

    def test_adjacency_is_configurable(self):
        proposals = [
            make_proposal("PROP-G1-1", date(2024, 1, 1), date(2024, 6, 30)),
            make_proposal("PROP-G1-2", date(2024, 7, 2), date(2024, 12, 31)),
        ]
        result = ProposalConsolidator(EngineConfig(adjacency_days=2)).consolidate(proposals)
        assert len(result.retained) == 1

    def test_overlapping_ranges_merge(self):
        proposals = [
            make_proposal("PROP-G1-1", date(2024, 1, 1), date(2024, 12, 31)),
            make_proposal("PROP-G1-2", date(2024, 3, 1), date(2024, 4, 1)),
        ]
        result = ProposalConsolidator().consolidate(proposals)
        assert [p.id for p in result.retained] == ["PROP-G1-1"]
        assert result.retained[0].effective_to == date(2024, 12, 31)

    def test_chain_of_merges_follows_to_survivor(self):
        proposals = [
            make_proposal("PROP-G1-3", date(2024, 3, 1), date(2024, 3, 31)),
            make_proposal("PROP-G1-1", date(2024, 1, 1), date(2024, 1, 31)),
            make_proposal("PROP-G1-2", date(2024, 2, 1), date(2024, 2, 29)),
        ]
        result = ProposalConsolidator().consolidate(proposals)
        assert [p.id for p in result.proposals] == ["PROP-G1-3", "PROP-G1-1", "PROP-G1-2"]
        assert [p.id for p in result.retained] == ["PROP-G1-1"]
        assert result.survivor_of("PROP-G1-3") == "PROP-G1-1"
        assert result.survivor_of("PROP-G1-1") == "PROP-G1-1"

    def test_different_hashes_never_merge(self):
        proposals = [
            make_proposal("PROP-G1-1", date(2024, 1, 1), date(2024, 12, 31), config_hash="A" * 64),
            make_proposal("PROP-G1-2", date(2024, 1, 1), date(2024, 12, 31), config_hash="B" * 64),
        ]
        result = ProposalConsolidator().consolidate(proposals)
        assert len(result.retained) == 2

    def test_different_groups_never_merge(self):
        proposals = [
            make_proposal("PROP-G1-1", date(2024, 1, 1), date(2024, 12, 31), group_id="G1"),
            make_proposal("PROP-G2-1", date(2024, 1, 1), date(2024, 12, 31), group_id="G2"),
        ]
        result = ProposalConsolidator().consolidate(proposals)
        assert len(result.retained) == 2


class TestKeyMappings:
    def test_one_row_per_year_and_scope_pair(self):
        proposal = make_proposal(
            "PROP-G1-1", date(2024, 6, 1), date(2025, 2, 1), scope=[("A", "P1"), ("B", "*")]
        )
        mappings = build_key_mappings([proposal])
        keys = [(m.effective_year, m.product_code, m.plan_code) for m in mappings]
        assert keys == [
            (2024, "A", "P1"),
            (2024, "B", "*"),
            (2025, "A", "P1"),
            (2025, "B", "*"),
        ]
        assert all(m.proposal_id == "PROP-G1-1" for m in mappings)
        assert all(m.split_config_hash == "H" * 64 for m in mappings)

    def test_consumed_proposals_are_not_mapped(self):
        result = ProposalConsolidator().consolidate(_adjacent_pair())
        mappings = build_key_mappings(result.proposals)
        assert {m.proposal_id for m in mappings} == {"PROP-G1-1"}
        assert {m.effective_year for m in mappings} == {2024, 2025}

    def test_wildcard_scope_is_mapped_as_is(self):
        proposal = make_proposal(
            "PROP-G1-1", date(2024, 1, 1), date(2024, 1, 1),
            scope=[("*", "*")], tier=MatchingTier.SIMPLE,
        )
        [mapping] = build_key_mappings([proposal])
        assert (mapping.product_code, mapping.plan_code) == ("*", "*")
