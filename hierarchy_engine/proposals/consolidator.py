"""
Proposal Consolidator: folds equivalent agreements together.

Within a group, retained proposals sharing a splitConfigHash whose date
ranges overlap or sit within `adjacency_days` of each other are merged.
The earliest proposal survives and absorbs the later one's range and
scope; the absorbed proposal is tombstoned (status Consumed,
consumed_by_proposal_id = survivor), never deleted.

Consolidation is idempotent: retained proposals coming out of a pass
never satisfy the merge condition with each other, so a second pass
changes nothing.
"""

import logging
from typing import Dict, List, Optional, Tuple

from hierarchy_engine.models.config import EngineConfig
from hierarchy_engine.models.proposal import (
    Proposal,
    ProposalKeyMapping,
    ProposalStatus,
    proposal_sort_key,
)

logger = logging.getLogger(__name__)

MERGE_REASON = "Same split configuration, extended date range and accumulated products"


class ConsolidationResult:
    """Consolidated proposals plus the absorbed → survivor map."""

    def __init__(self, proposals: List[Proposal], merged_into: Dict[str, str]):
        self.proposals = proposals
        self.merged_into = merged_into

    @property
    def retained(self) -> List[Proposal]:
        return [p for p in self.proposals if p.is_retained]

    @property
    def consumed(self) -> List[Proposal]:
        return [p for p in self.proposals if not p.is_retained]

    def survivor_of(self, proposal_id: str) -> str:
        """Follow merges to the proposal that finally holds a certificate."""
        seen = set()
        while proposal_id in self.merged_into and proposal_id not in seen:
            seen.add(proposal_id)
            proposal_id = self.merged_into[proposal_id]
        return proposal_id


class ProposalConsolidator:
    """Merges same-hash proposals with overlapping or adjacent date ranges."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def consolidate(self, proposals: List[Proposal]) -> ConsolidationResult:
        """
        Returns a new list in the input order; inputs are not mutated.
        Proposals already consumed pass through untouched.
        """
        working: Dict[str, Proposal] = {p.id: p.model_copy(deep=True) for p in proposals}
        merged_into: Dict[str, str] = {}

        lanes: Dict[Tuple[str, str], List[Proposal]] = {}
        for p in working.values():
            if p.is_retained:
                lanes.setdefault((p.group_id, p.split_config_hash), []).append(p)

        for (group_id, config_hash), lane in sorted(lanes.items()):
            lane.sort(key=lambda p: (p.effective_from, p.effective_to, proposal_sort_key(p.id)))
            survivor = lane[0]
            for candidate in lane[1:]:
                if self._mergeable(survivor, candidate):
                    self._absorb(survivor, candidate)
                    merged_into[candidate.id] = survivor.id
                    logger.debug(
                        "Group %s: %s consumed by %s (%s..%s)",
                        group_id, candidate.id, survivor.id,
                        survivor.effective_from, survivor.effective_to,
                    )
                else:
                    survivor = candidate

        if merged_into:
            logger.info("Consolidated %d proposals", len(merged_into))
        return ConsolidationResult(
            proposals=[working[p.id] for p in proposals],
            merged_into=merged_into,
        )

    def _mergeable(self, survivor: Proposal, candidate: Proposal) -> bool:
        gap = (candidate.effective_from - survivor.effective_to).days
        return gap <= self.config.adjacency_days

    def _absorb(self, survivor: Proposal, candidate: Proposal) -> None:
        survivor.effective_to = max(survivor.effective_to, candidate.effective_to)
        survivor.scope = sorted(set(survivor.scope) | set(candidate.scope))
        survivor.certificate_count += candidate.certificate_count
        candidate.status = ProposalStatus.CONSUMED
        candidate.consumed_by_proposal_id = survivor.id
        candidate.consolidation_reason = MERGE_REASON


def build_key_mappings(proposals: List[Proposal]) -> List[ProposalKeyMapping]:
    """
    One mapping row per (group, year, product, plan) key of every retained
    proposal. Consumed proposals contribute nothing.
    """
    rows: Dict[Tuple, ProposalKeyMapping] = {}
    for p in proposals:
        if not p.is_retained:
            continue
        for year in p.effective_years():
            for product, plan in p.scope:
                mapping = ProposalKeyMapping(
                    group_id=p.group_id,
                    effective_year=year,
                    product_code=product,
                    plan_code=plan,
                    proposal_id=p.id,
                    split_config_hash=p.split_config_hash,
                )
                rows[mapping.natural_key] = mapping
    return [rows[k] for k in sorted(rows)]

