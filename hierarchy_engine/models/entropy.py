"""Entropy classification of a group's cluster distribution."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class EntropyClassification(str, Enum):
    LOW = "Low"                          # One stable configuration
    HUMAN_ERROR = "HumanError"           # Dominant pattern with minority outliers
    BUSINESS_DRIVEN = "BusinessDriven"   # Case-by-case configurations


class EntropyResult(BaseModel):
    """Statistics and verdict for one group/key slice."""

    group_id: Optional[str] = None
    unique_config_count: int
    total_records: int
    dominant_cluster_config_hash: Optional[str] = None
    dominant_coverage_percent: float = Field(ge=0.0, le=1.0)   # Fraction, not 0-100
    simple_entropy: float = Field(ge=0.0)
    shannon_entropy: float = Field(ge=0.0)
    classification: EntropyClassification
