"""
Entropy Classifier: statistically characterizes a key slice's cluster
distribution and decides whether it is stable, mostly stable with
outliers, or case-by-case.

Behavioral Contract:
- simpleEntropy   = uniqueClusterCount / totalRecords
- shannonEntropy  = -Σ pᵢ·log₂(pᵢ), pᵢ = clusterCount / totalRecords
- dominantCoverage = maxClusterCount / totalRecords
- BusinessDriven if simple > uniqueRatio OR shannon > shannonThreshold
  OR dominant < dominantCoverage
- Low else if dominant > highDominance AND simple < lowUniqueRatio
- HumanError otherwise
- No side effects. Thresholds always come from EngineConfig.
"""

import logging
import math
from typing import List, Optional, Sequence

from hierarchy_engine.models.config import EngineConfig
from hierarchy_engine.models.entropy import EntropyClassification, EntropyResult
from hierarchy_engine.models.hierarchy import Cluster

logger = logging.getLogger(__name__)


def simple_entropy(counts: Sequence[int]) -> float:
    total = sum(counts)
    return len(counts) / total if total else 0.0


def shannon_entropy(counts: Sequence[int]) -> float:
    total = sum(counts)
    if not total:
        return 0.0
    h = 0.0
    for n in counts:
        if n > 0:
            p = n / total
            h -= p * math.log2(p)
    # -0.0 for a single cluster
    return abs(h)


def dominant_coverage(counts: Sequence[int]) -> float:
    total = sum(counts)
    return max(counts) / total if total else 0.0


class EntropyClassifier:
    """Classifies clusters of one key slice using configured thresholds."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def classify(
        self, clusters: List[Cluster], group_id: Optional[str] = None
    ) -> EntropyResult:
        """
        Compute the three statistics and the resulting classification.

        An empty slice has nothing to route and is reported as Low.
        """
        counts = [c.record_count for c in clusters]
        total = sum(counts)

        if total == 0:
            return EntropyResult(
                group_id=group_id,
                unique_config_count=0,
                total_records=0,
                dominant_coverage_percent=0.0,
                simple_entropy=0.0,
                shannon_entropy=0.0,
                classification=EntropyClassification.LOW,
            )

        simple = simple_entropy(counts)
        shannon = shannon_entropy(counts)
        dominant = dominant_coverage(counts)
        dominant_cluster = min(clusters, key=lambda c: (-c.record_count, c.config_hash))

        result = EntropyResult(
            group_id=group_id,
            unique_config_count=len(clusters),
            total_records=total,
            dominant_cluster_config_hash=dominant_cluster.config_hash,
            dominant_coverage_percent=dominant,
            simple_entropy=simple,
            shannon_entropy=shannon,
            classification=self._decide(simple, shannon, dominant),
        )

        if self.config.log_entropy_by_group:
            logger.info(
                "Entropy for group %s: %s (unique=%d total=%d simple=%.4f "
                "shannon=%.4f dominant=%.4f)",
                group_id, result.classification.value, result.unique_config_count,
                total, simple, shannon, dominant,
            )
        return result

    def _decide(
        self, simple: float, shannon: float, dominant: float
    ) -> EntropyClassification:
        cfg = self.config
        if (
            simple > cfg.unique_ratio_threshold
            or shannon > cfg.shannon_threshold
            or dominant < cfg.dominant_coverage_threshold
        ):
            return EntropyClassification.BUSINESS_DRIVEN
        if (
            dominant > cfg.high_dominance_threshold
            and simple < cfg.low_unique_ratio_threshold
        ):
            return EntropyClassification.LOW
        return EntropyClassification.HUMAN_ERROR
