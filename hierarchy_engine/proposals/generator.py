"""
Proposal Generator: turns qualifying certificate configurations into
canonical agreements.

Matching tiers run coarsest first. Each tier only sees the certificates
no earlier tier claimed, so tiers partition the population:

  1. simple              the whole (remaining) group has one ConfigHash
  2. plan-differentiated (year, product) has several hashes, but each
                         (year, product, plan) has exactly one
  3. year-differentiated (product, plan) has several hashes across years,
                         but each (year, product, plan) has exactly one
  4. granular            everything left, one bucket per
                         (hash, year, product, plan)

Every bucket becomes one Proposal; its date range is [min, max] of its
members' effective dates.
"""

import logging
from collections import defaultdict
from typing import Callable, Dict, Hashable, List, Optional, Set, Tuple

from hierarchy_engine.models.hierarchy import (
    WILDCARD,
    CertificateConfig,
    HierarchyParticipant,
    HierarchyVersion,
    SplitSignature,
)
from hierarchy_engine.models.proposal import MatchingTier, Proposal, ProposalSplit

logger = logging.getLogger(__name__)

Buckets = Dict[Hashable, List[CertificateConfig]]


def hierarchy_id_for(hierarchy_hash: str) -> str:
    return f"HIER-{hierarchy_hash[:16]}"


def hierarchy_version_for(
    group_id: Optional[str], split: SplitSignature
) -> HierarchyVersion:
    """The shared hierarchy record behind one split."""
    return HierarchyVersion(
        id=hierarchy_id_for(split.hierarchy_hash),
        hierarchy_hash=split.hierarchy_hash,
        group_id=group_id,
        split_percent=split.split_percent,
        writing_broker_id=split.writing_broker_id,
        participants=[
            HierarchyParticipant(
                broker_id=t.broker_id,
                level=t.level,
                schedule_code=t.schedule_code,
            )
            for t in split.tiers
        ],
    )


class GenerationResult:
    """Proposals for one group plus who they cover."""

    def __init__(
        self,
        proposals: List[Proposal],
        assignments: Dict[str, str],
        hierarchies: List[HierarchyVersion],
    ):
        self.proposals = proposals
        self.assignments = assignments      # certificate_id -> proposal_id
        self.hierarchies = hierarchies

    def tier_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for p in self.proposals:
            counts[p.tier.value] += 1
        return dict(counts)


class ProposalGenerator:
    """Runs the matching tiers over one group's qualifying certificates."""

    def __init__(self):
        self._tiers: List[Tuple[MatchingTier, Callable[[List[CertificateConfig]], Buckets]]] = []
        self._register_default_tiers()

    def _register_default_tiers(self) -> None:
        self._tiers = [
            (MatchingTier.SIMPLE, self._simple_tier),
            (MatchingTier.PLAN, self._plan_differentiated_tier),
            (MatchingTier.YEAR, self._year_differentiated_tier),
            (MatchingTier.GRANULAR, self._granular_tier),
        ]

    def generate(
        self, group_id: str, configs: List[CertificateConfig]
    ) -> GenerationResult:
        """Build proposals for a group. Ids are PROP-<group>-<n> in generation order."""
        remaining = sorted(configs, key=lambda c: c.certificate_id)
        proposals: List[Proposal] = []
        assignments: Dict[str, str] = {}
        hierarchies: Dict[str, HierarchyVersion] = {}

        for tier, rule in self._tiers:
            if not remaining:
                break
            buckets = rule(remaining)
            claimed: Set[str] = set()
            for key in sorted(buckets, key=_sort_key):
                members = buckets[key]
                proposal = self._build_proposal(
                    proposal_id=f"PROP-{group_id}-{len(proposals) + 1}",
                    group_id=group_id,
                    tier=tier,
                    members=members,
                )
                proposals.append(proposal)
                for c in members:
                    assignments[c.certificate_id] = proposal.id
                    claimed.add(c.certificate_id)
                for split in members[0].splits:
                    version = hierarchy_version_for(group_id, split)
                    hierarchies.setdefault(version.id, version)
            if buckets:
                logger.debug(
                    "Group %s: %s tier claimed %d certificates into %d proposals",
                    group_id, tier.value, len(claimed), len(buckets),
                )
            remaining = [c for c in remaining if c.certificate_id not in claimed]

        return GenerationResult(
            proposals=proposals,
            assignments=assignments,
            hierarchies=[hierarchies[k] for k in sorted(hierarchies)],
        )

    # --- Tiers ---

    def _simple_tier(self, configs: List[CertificateConfig]) -> Buckets:
        hashes = {c.config_hash for c in configs}
        if len(hashes) != 1:
            return {}
        return {(next(iter(hashes)),): list(configs)}

    def _plan_differentiated_tier(self, configs: List[CertificateConfig]) -> Buckets:
        by_year_product = _hashes_by(configs, lambda c: (c.effective_year, c.product_code))
        by_key = _hashes_by(configs, _full_key)
        buckets: Buckets = {}
        for c in configs:
            if (
                len(by_year_product[(c.effective_year, c.product_code)]) > 1
                and len(by_key[_full_key(c)]) == 1
            ):
                buckets.setdefault((c.config_hash, c.effective_year), []).append(c)
        return buckets

    def _year_differentiated_tier(self, configs: List[CertificateConfig]) -> Buckets:
        by_product_plan = _hashes_by(configs, lambda c: (c.product_code, c.plan_or_wildcard))
        by_key = _hashes_by(configs, _full_key)
        buckets: Buckets = {}
        for c in configs:
            if (
                len(by_product_plan[(c.product_code, c.plan_or_wildcard)]) > 1
                and len(by_key[_full_key(c)]) == 1
            ):
                buckets.setdefault((c.config_hash, c.effective_year), []).append(c)
        return buckets

    def _granular_tier(self, configs: List[CertificateConfig]) -> Buckets:
        buckets: Buckets = {}
        for c in configs:
            buckets.setdefault((c.config_hash,) + _full_key(c), []).append(c)
        return buckets

    # --- Assembly ---

    def _build_proposal(
        self,
        proposal_id: str,
        group_id: str,
        tier: MatchingTier,
        members: List[CertificateConfig],
    ) -> Proposal:
        representative = members[0]
        if tier == MatchingTier.SIMPLE:
            scope = [(WILDCARD, WILDCARD)]
        else:
            scope = sorted({(c.product_code, c.plan_or_wildcard) for c in members})
        return Proposal(
            id=proposal_id,
            group_id=group_id,
            tier=tier,
            scope=scope,
            effective_from=min(c.effective_date for c in members),
            effective_to=max(c.effective_date for c in members),
            split_config_hash=representative.config_hash,
            splits=[
                ProposalSplit(
                    split_sequence=s.split_sequence,
                    split_percent=s.split_percent,
                    hierarchy_id=hierarchy_id_for(s.hierarchy_hash),
                )
                for s in representative.splits
            ],
            certificate_count=len(members),
        )


def _full_key(c: CertificateConfig) -> Tuple[int, str, str]:
    return (c.effective_year, c.product_code, c.plan_or_wildcard)


def _hashes_by(
    configs: List[CertificateConfig], key: Callable[[CertificateConfig], Hashable]
) -> Dict[Hashable, Set[str]]:
    seen: Dict[Hashable, Set[str]] = defaultdict(set)
    for c in configs:
        seen[key(c)].add(c.config_hash)
    return seen


def _sort_key(key: Tuple) -> Tuple:
    return tuple(str(part) for part in key)
