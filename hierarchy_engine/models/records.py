"""Certificate records: the immutable input rows of the engine."""

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CertificateRecord(BaseModel):
    """
    One split leg of one certificate under one group.

    Produced by the Input Reader after boundary validation and never
    mutated by the core.
    """

    model_config = ConfigDict(frozen=True)

    certificate_id: str
    group_id: Optional[str] = None            # Missing for direct-relationship certificates
    product_code: str
    plan_code: Optional[str] = None           # Missing plan codes match any plan
    effective_date: date
    split_sequence: int                       # Which split group within the certificate
    split_percent: float
    broker_level: int                         # Tier within the split, 1 = writing broker
    broker_id: str
    schedule_code: Optional[str] = None
    paid_broker_id: Optional[str] = None      # Differs from broker_id for assigned commissions

    @property
    def effective_year(self) -> int:
        return self.effective_date.year


class GroupBatch(BaseModel):
    """All records for one business group key, as handed over by the reader."""

    group_id: Optional[str] = None
    records: List[CertificateRecord] = Field(default_factory=list)
    incomplete_certificate_ids: List[str] = Field(default_factory=list)   # Lost rows at the reader

    @property
    def certificate_ids(self) -> List[str]:
        return list(dict.fromkeys(r.certificate_id for r in self.records))


class SkippedRecord(BaseModel):
    """A raw row rejected at the reader boundary."""

    certificate_id: Optional[str] = None
    group_id: Optional[str] = None
    code: str
    reason: str
