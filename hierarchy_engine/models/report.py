"""Run and conformance reports."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ConformanceStatus(str, Enum):
    CONFORMANT = "Conformant"
    NO_MATCH = "NonConformant-NoMatch"
    MULTIPLE_MATCHES = "NonConformant-MultipleMatches"


class CertificateConformance(BaseModel):
    certificate_id: str
    group_id: Optional[str] = None
    effective_year: int
    product_code: str
    plan_code: str
    status: ConformanceStatus
    matched_proposal_ids: List[str] = Field(default_factory=list)
    has_override: bool = False


class GroupConformance(BaseModel):
    """Per-group aggregate of certificate conformance."""

    group_id: Optional[str] = None
    total_certificates: int
    conformant: int
    no_match: int
    multiple_matches: int
    explained_by_override: int          # Non-conformant certificates that carry an override
    conformance_percent: float          # 0-100
    classification: str                 # Conformant | Nearly Conformant | Non-Conformant
    passes_gate: bool


class ConformanceReport(BaseModel):
    gate: float
    certificates: List[CertificateConformance] = Field(default_factory=list)
    groups: List[GroupConformance] = Field(default_factory=list)

    @property
    def failing_groups(self) -> List[GroupConformance]:
        return [g for g in self.groups if not g.passes_gate]

    @property
    def passed(self) -> bool:
        return not self.failing_groups


class GroupFailure(BaseModel):
    """A group whose processing raised; its certificates were skipped."""

    group_id: Optional[str] = None
    certificate_count: int
    error: dict


class RunReport(BaseModel):
    """
    User-visible summary of a run. Nothing is dropped silently: every
    skipped record, failed group and override is counted here.
    """

    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    dry_run: bool = False

    groups_processed: int = 0
    groups_excluded: int = 0
    groups_failed: List[GroupFailure] = Field(default_factory=list)
    certificates_processed: int = 0
    classifications: Dict[str, int] = Field(default_factory=dict)

    proposals_retained: int = 0
    proposals_consumed: int = 0
    key_mappings: int = 0
    overrides_by_reason: Dict[str, int] = Field(default_factory=dict)
    skipped_records: int = 0
    hash_collisions: int = 0
    warnings: List[str] = Field(default_factory=list)

    chunks_completed: int = 0
    cancelled: bool = False
    next_chunk_index: int = 0           # Resume point for the orchestrator
    aborted: Optional[dict] = None      # Set when the writer gave up; nothing after is staged

    @property
    def overrides_total(self) -> int:
        return sum(self.overrides_by_reason.values())

    @property
    def certificates_failed(self) -> int:
        return sum(f.certificate_count for f in self.groups_failed)
