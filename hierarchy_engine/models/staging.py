"""The per-run output bundle handed to the Staging Writer."""

from typing import List, Optional

from pydantic import BaseModel, Field

from hierarchy_engine.models.hierarchy import BrokerAssignment, HierarchyVersion
from hierarchy_engine.models.override import PolicyHierarchyAssignment
from hierarchy_engine.models.proposal import (
    CertificateAssignment,
    Proposal,
    ProposalKeyMapping,
)


class StagingBundle(BaseModel):
    """
    Everything produced for a set of groups.

    group_ids lists every group the bundle is authoritative for: a writer
    replaces all previously staged rows of those groups, including groups
    that now produce no rows at all.
    """

    group_ids: List[Optional[str]] = Field(default_factory=list)
    proposals: List[Proposal] = Field(default_factory=list)
    key_mappings: List[ProposalKeyMapping] = Field(default_factory=list)
    hierarchies: List[HierarchyVersion] = Field(default_factory=list)
    overrides: List[PolicyHierarchyAssignment] = Field(default_factory=list)
    assignments: List[CertificateAssignment] = Field(default_factory=list)
    broker_assignments: List[BrokerAssignment] = Field(default_factory=list)

    def extend(self, other: "StagingBundle") -> None:
        self.group_ids.extend(other.group_ids)
        self.proposals.extend(other.proposals)
        self.key_mappings.extend(other.key_mappings)
        self.overrides.extend(other.overrides)
        self.assignments.extend(other.assignments)
        known = {h.id for h in self.hierarchies}
        for h in other.hierarchies:
            if h.id not in known:
                self.hierarchies.append(h)
                known.add(h.id)
        self._merge_broker_assignments(other.broker_assignments)

    def _merge_broker_assignments(self, incoming: List[BrokerAssignment]) -> None:
        """Keep the most recent assignment per source broker."""
        by_source = {a.source_broker_id: a for a in self.broker_assignments}
        for a in incoming:
            existing = by_source.get(a.source_broker_id)
            if existing is None or a.effective_date > existing.effective_date:
                by_source[a.source_broker_id] = a
        self.broker_assignments = [by_source[k] for k in sorted(by_source)]

    @property
    def retained_proposals(self) -> List[Proposal]:
        return [p for p in self.proposals if p.is_retained]
