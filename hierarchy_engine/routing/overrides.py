"""
Outlier / Override Router: issues PolicyHierarchyAssignments for
certificates that no stable proposal should cover.

One override is written per (certificate, split sequence). The reason
text always carries the statistic or ambiguity behind the decision so
that a human can triage it without re-running the analysis.
"""

import re
from typing import Dict, Iterable, List, Optional, Sequence

from hierarchy_engine.models.config import EngineConfig
from hierarchy_engine.models.entropy import EntropyResult
from hierarchy_engine.models.hierarchy import CertificateConfig, Cluster, HierarchyParticipant
from hierarchy_engine.models.override import OverrideReason, PolicyHierarchyAssignment
from hierarchy_engine.proposals.generator import hierarchy_id_for

_ALL_ZEROS = re.compile(r"^G?0+$")


def is_invalid_group(group_id: Optional[str]) -> bool:
    """Missing, blank, all-zero or "G" + zeros group keys mark direct-relationship certificates."""
    if group_id is None:
        return True
    trimmed = group_id.strip()
    return trimmed == "" or bool(_ALL_ZEROS.match(trimmed))


def has_valid_split_total(config: CertificateConfig, epsilon: float) -> bool:
    return abs(config.split_total - 100.0) <= epsilon


def format_percent(value: float) -> str:
    """5.0 -> '5', 33.3333 -> '33.33'."""
    return f"{round(value, 2):g}"


def format_scope(pairs: Iterable[Sequence[str]]) -> str:
    return ", ".join(f"{product}/{plan}" for product, plan in pairs)


class OverrideRouter:
    """Builds override records for every routing decision."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def overrides_for(
        self,
        config: CertificateConfig,
        reason_code: OverrideReason,
        reason: str,
    ) -> List[PolicyHierarchyAssignment]:
        """One override per split of a certificate."""
        return [
            PolicyHierarchyAssignment(
                id=f"PHA-{config.certificate_id}-{split.split_sequence}",
                certificate_id=config.certificate_id,
                group_id=config.group_id,
                split_sequence=split.split_sequence,
                split_percent=split.split_percent,
                writing_broker_id=split.writing_broker_id,
                hierarchy_id=hierarchy_id_for(split.hierarchy_hash),
                reason_code=reason_code,
                non_conformant_reason=reason,
                participants=[
                    HierarchyParticipant(
                        broker_id=t.broker_id,
                        level=t.level,
                        schedule_code=t.schedule_code,
                    )
                    for t in split.tiers
                ],
            )
            for split in config.splits
        ]

    def route_invalid_group(
        self, configs: Iterable[CertificateConfig]
    ) -> List[PolicyHierarchyAssignment]:
        overrides = []
        for c in configs:
            reason = (
                f"invalid group key '{(c.group_id or '').strip()}': "
                "direct-relationship certificate outside any group agreement"
            )
            overrides.extend(self.overrides_for(c, OverrideReason.INVALID_GROUP, reason))
        return overrides

    def route_invalid_split(self, config: CertificateConfig) -> List[PolicyHierarchyAssignment]:
        reason = (
            f"invalid split configuration: split percentages total "
            f"{format_percent(config.split_total)}% (expected 100)"
        )
        return self.overrides_for(config, OverrideReason.INVALID_SPLIT, reason)

    def route_incomplete(self, config: CertificateConfig) -> List[PolicyHierarchyAssignment]:
        """Certificates missing rows rejected at the reader boundary."""
        return self.overrides_for(
            config,
            OverrideReason.INVALID_SPLIT,
            "invalid split configuration: incomplete record set",
        )

    def route_business_driven(
        self,
        configs: Iterable[CertificateConfig],
        entropy: EntropyResult,
    ) -> List[PolicyHierarchyAssignment]:
        """Every certificate of a high-entropy group gets its own override."""
        reason = (
            f"high-entropy group: {entropy.shannon_entropy:.4f} bits / "
            f"{entropy.simple_entropy:.4f} unique-ratio"
        )
        overrides = []
        for c in configs:
            overrides.extend(self.overrides_for(c, OverrideReason.BUSINESS_DRIVEN, reason))
        return overrides

    def split_outliers(self, clusters: List[Cluster]) -> Dict[str, List[Cluster]]:
        """Partition HumanError clusters into those kept for proposals and outliers."""
        threshold = self.config.override_cluster_size_threshold
        return {
            "qualifying": [c for c in clusters if c.record_count >= threshold],
            "outliers": [c for c in clusters if c.record_count < threshold],
        }

    def route_outliers(
        self,
        outliers: List[Cluster],
        total_certificates: int,
        configs_by_id: Dict[str, CertificateConfig],
    ) -> List[PolicyHierarchyAssignment]:
        """Minority clusters below the size threshold, tagged with share and scope."""
        overrides = []
        for cluster in outliers:
            share = cluster.record_count / total_certificates * 100 if total_certificates else 0.0
            reason = (
                f"minority configuration: {format_percent(share)}% of group "
                f"({cluster.record_count} of {total_certificates} certificates); "
                f"scope {format_scope(cluster.scope)}; "
                f"effective {cluster.date_from.isoformat()}..{cluster.date_to.isoformat()}"
            )
            for cert_id in cluster.member_certificate_ids:
                overrides.extend(self.overrides_for(
                    configs_by_id[cert_id], OverrideReason.HUMAN_ERROR, reason
                ))
        return overrides

    def route_unmatched(self, config: CertificateConfig) -> List[PolicyHierarchyAssignment]:
        return self.overrides_for(config, OverrideReason.NO_MATCH, "no matching proposal")

    def route_overlapping(
        self, config: CertificateConfig, proposal_ids: Sequence[str]
    ) -> List[PolicyHierarchyAssignment]:
        reason = f"overlapping proposals: {', '.join(proposal_ids)}"
        return self.overrides_for(config, OverrideReason.OVERLAPPING, reason)
