"""Policy hierarchy assignments (overrides) for certificates without a stable proposal."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from hierarchy_engine.models.hierarchy import HierarchyParticipant


class OverrideReason(str, Enum):
    INVALID_GROUP = "InvalidGroup"                # Direct-relationship certificate
    INVALID_SPLIT = "InvalidSplitConfiguration"   # Split percentages do not sum to 100
    BUSINESS_DRIVEN = "BusinessDrivenEntropy"     # Whole group is case-by-case
    HUMAN_ERROR = "HumanErrorOutlier"             # Minority cluster below the size threshold
    NO_MATCH = "NoMatchingProposal"
    OVERLAPPING = "OverlappingProposals"


class PolicyHierarchyAssignment(BaseModel):
    """
    One override record per (certificate, split sequence).

    non_conformant_reason is the human-readable triage text and always
    carries the statistic or the ambiguity that triggered the override.
    """

    id: str
    certificate_id: str
    group_id: Optional[str] = None
    split_sequence: int
    split_percent: float
    writing_broker_id: str
    hierarchy_id: Optional[str] = None
    reason_code: OverrideReason
    non_conformant_reason: str
    participants: List[HierarchyParticipant] = Field(default_factory=list)
