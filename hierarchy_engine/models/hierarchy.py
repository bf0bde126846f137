"""Hierarchy signatures, certificate configurations and clusters."""

from datetime import date
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

WILDCARD = "*"


class HierarchyTier(BaseModel):
    """One (level, broker, schedule) tier inside a split hierarchy."""

    model_config = ConfigDict(frozen=True)

    level: int
    broker_id: str
    schedule_code: Optional[str] = None
    paid_broker_id: Optional[str] = None    # Assignment tracking only, never hashed


class SplitSignature(BaseModel):
    """The ordered tiers of one (certificate, split sequence)."""

    model_config = ConfigDict(frozen=True)

    split_sequence: int
    split_percent: float
    tiers: List[HierarchyTier]
    hierarchy_hash: str

    @property
    def writing_broker_id(self) -> str:
        return self.tiers[0].broker_id if self.tiers else ""


class CertificateConfig(BaseModel):
    """A certificate's full split configuration and its content address."""

    model_config = ConfigDict(frozen=True)

    certificate_id: str
    group_id: Optional[str] = None
    product_code: str
    plan_code: Optional[str] = None
    effective_date: date
    splits: List[SplitSignature]
    config_hash: str

    @property
    def split_total(self) -> float:
        return sum(s.split_percent for s in self.splits)

    @property
    def effective_year(self) -> int:
        return self.effective_date.year

    @property
    def plan_or_wildcard(self) -> str:
        return self.plan_code or WILDCARD


class Cluster(BaseModel):
    """
    Certificates sharing one ConfigHash within one key slice.

    Key fields hold WILDCARD / None when the slice spans that dimension
    (e.g. a whole-group slice has product "*", plan "*", year None).
    Built fresh per run and never persisted.
    """

    config_hash: str
    group_id: Optional[str] = None
    product_code: str = WILDCARD
    plan_code: str = WILDCARD
    effective_year: Optional[int] = None
    member_certificate_ids: List[str] = Field(default_factory=list)
    record_count: int = 0
    representative: CertificateConfig
    scope: List[Tuple[str, str]] = Field(default_factory=list)   # Observed (product, plan) pairs
    date_from: date
    date_to: date


class ClusterSet(BaseModel):
    """Clusters of one key slice plus the slice's certificate total."""

    clusters: List[Cluster] = Field(default_factory=list)
    total_certificates: int = 0


class HierarchyParticipant(BaseModel):
    """One tier inside a persisted hierarchy version."""

    broker_id: str
    level: int
    schedule_code: Optional[str] = None


class HierarchyVersion(BaseModel):
    """A deduplicated split hierarchy, shared by proposals and overrides."""

    id: str
    hierarchy_hash: str
    group_id: Optional[str] = None
    split_percent: float
    writing_broker_id: str
    participants: List[HierarchyParticipant]


class BrokerAssignment(BaseModel):
    """Commission earned by one broker but paid to another."""

    source_broker_id: str
    recipient_broker_id: str
    effective_date: date
