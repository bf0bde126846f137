"""Proposals: canonical, reusable commission-split agreements."""

from datetime import date
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from hierarchy_engine.models.hierarchy import WILDCARD


class ProposalStatus(str, Enum):
    ACTIVE = "Active"
    CONSUMED = "Consumed"    # Tombstoned by consolidation, never deleted


class MatchingTier(str, Enum):
    """Key-matching tiers, coarsest first."""

    SIMPLE = "simple"                      # One configuration for the whole group
    PLAN = "plan_differentiated"           # Configuration varies by plan within a product-year
    YEAR = "year_differentiated"           # Configuration varies by year within a product-plan
    GRANULAR = "granular"                  # Everything left over


class ProposalSplit(BaseModel):
    """One split of a proposal, pointing at a shared hierarchy version."""

    split_sequence: int
    split_percent: float
    hierarchy_id: str


class Proposal(BaseModel):
    """
    A canonical agreement covering many certificates of one group.

    Scope is a set of (product, plan) pairs where either side may be the
    wildcard "*". Only the consolidator changes a proposal after it is
    generated, and only to extend it or to tombstone it.
    """

    id: str
    group_id: str
    tier: MatchingTier
    scope: List[Tuple[str, str]]
    effective_from: date
    effective_to: date
    split_config_hash: str
    splits: List[ProposalSplit] = Field(default_factory=list)
    certificate_count: int = 0
    status: ProposalStatus = ProposalStatus.ACTIVE
    consumed_by_proposal_id: Optional[str] = None
    consolidation_reason: Optional[str] = None

    @property
    def is_retained(self) -> bool:
        return self.status == ProposalStatus.ACTIVE

    @property
    def product_codes(self) -> List[str]:
        return sorted({p for p, _ in self.scope})

    @property
    def plan_codes(self) -> List[str]:
        return sorted({pl for _, pl in self.scope})

    @property
    def split_total(self) -> float:
        return sum(s.split_percent for s in self.splits)

    def covers_scope(self, product_code: str, plan_code: Optional[str]) -> bool:
        """Whether a (product, plan) falls inside the scope, honouring wildcards."""
        plan = plan_code or WILDCARD
        for p, pl in self.scope:
            if (p == WILDCARD or p == product_code) and (pl == WILDCARD or pl == plan):
                return True
        return False

    def covers(self, product_code: str, plan_code: Optional[str], on: date) -> bool:
        return (
            self.effective_from <= on <= self.effective_to
            and self.covers_scope(product_code, plan_code)
        )

    def effective_years(self) -> List[int]:
        return list(range(self.effective_from.year, self.effective_to.year + 1))


class ProposalKeyMapping(BaseModel):
    """Index row (group, year, product, plan) → proposal, for conformance lookups."""

    group_id: str
    effective_year: int
    product_code: str
    plan_code: str
    proposal_id: str
    split_config_hash: str

    @property
    def natural_key(self) -> Tuple[str, int, str, str, str]:
        return (
            self.group_id,
            self.effective_year,
            self.product_code,
            self.plan_code,
            self.proposal_id,
        )


class CertificateAssignment(BaseModel):
    """Which retained proposal a certificate was resolved to."""

    certificate_id: str
    group_id: str
    proposal_id: str


def proposal_sort_key(proposal_id: str) -> Tuple[str, int]:
    """PROP-<group>-<n> ordered numerically on n, so PROP-G1-10 follows PROP-G1-9."""
    head, _, tail = proposal_id.rpartition("-")
    return (head, int(tail)) if tail.isdigit() else (proposal_id, 0)
