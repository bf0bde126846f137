"""Engine configuration: classification thresholds and processing knobs."""

from typing import List

from pydantic import BaseModel, Field

from hierarchy_engine.errors import ConfigurationError

RATIO_FIELDS = (
    "unique_ratio_threshold",
    "dominant_coverage_threshold",
    "high_dominance_threshold",
    "low_unique_ratio_threshold",
    "conformance_gate",
)

POSITIVE_INT_FIELDS = (
    "override_cluster_size_threshold",
    "chunk_size",
    "max_workers",
)


class EngineConfig(BaseModel):
    """
    Configuration for one resolution run.

    Values are not range-checked on construction; ensure_valid() is
    called by the runner before any group is processed so that a bad
    threshold surfaces as a ConfigurationError.
    """

    # Entropy classification
    unique_ratio_threshold: float = 0.2
    shannon_threshold: float = 5.0            # Bits
    dominant_coverage_threshold: float = 0.5
    high_dominance_threshold: float = 0.95
    low_unique_ratio_threshold: float = 0.15

    # Routing
    override_cluster_size_threshold: int = 3

    # Invariants
    split_total_epsilon: float = 0.01
    adjacency_days: int = 1

    # Processing
    chunk_size: int = 500                     # Groups per chunk
    max_workers: int = 1
    dry_run: bool = False
    excluded_groups: List[str] = Field(default_factory=list)
    log_entropy_by_group: bool = False

    # Auditing
    conformance_gate: float = 0.95

    def ensure_valid(self) -> "EngineConfig":
        """Raise ConfigurationError if any threshold or knob is out of range."""
        problems = {}
        for name in RATIO_FIELDS:
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                problems[name] = f"{value} is outside [0, 1]"
        for name in POSITIVE_INT_FIELDS:
            value = getattr(self, name)
            if value <= 0:
                problems[name] = f"{value} must be greater than 0"
        if self.shannon_threshold < 0:
            problems["shannon_threshold"] = f"{self.shannon_threshold} must not be negative"
        if self.split_total_epsilon < 0:
            problems["split_total_epsilon"] = f"{self.split_total_epsilon} must not be negative"
        if self.adjacency_days < 0:
            problems["adjacency_days"] = f"{self.adjacency_days} must not be negative"

        if problems:
            raise ConfigurationError(
                message="Invalid engine configuration: "
                + "; ".join(f"{k} {v}" for k, v in sorted(problems.items())),
                details=problems,
            )
        return self
