"""
Group Processor: one business group through the whole first pass.

  records → configurations → (invalid group | incomplete | invalid split) overrides
          → clusters → entropy verdict
          → BusinessDriven: every certificate overridden
          → HumanError:     small clusters overridden, the rest generate proposals
          → Low:            everything generates proposals
          → consolidation → key mappings

Deterministic for a given record set and configuration. Holds no state
between groups apart from the run-wide HashRegistry.
"""

import logging
from typing import Dict, List, Optional

from hierarchy_engine.classification.entropy import EntropyClassifier
from hierarchy_engine.clustering.builder import (
    ClusterBuilder,
    HashRegistry,
    collect_broker_assignments,
)
from hierarchy_engine.errors import InvariantViolationError
from hierarchy_engine.models.config import EngineConfig
from hierarchy_engine.models.entropy import EntropyClassification, EntropyResult
from hierarchy_engine.models.hierarchy import CertificateConfig, HierarchyVersion
from hierarchy_engine.models.override import PolicyHierarchyAssignment
from hierarchy_engine.models.proposal import CertificateAssignment
from hierarchy_engine.models.records import GroupBatch
from hierarchy_engine.models.staging import StagingBundle
from hierarchy_engine.proposals.consolidator import ProposalConsolidator, build_key_mappings
from hierarchy_engine.proposals.generator import ProposalGenerator, hierarchy_version_for
from hierarchy_engine.routing.overrides import (
    OverrideRouter,
    has_valid_split_total,
    is_invalid_group,
)

logger = logging.getLogger(__name__)


class GroupOutcome:
    """First-pass result for one group."""

    def __init__(
        self,
        group_id: Optional[str],
        bundle: StagingBundle,
        entropy: Optional[EntropyResult],
        certificates: Dict[str, CertificateConfig],
    ):
        self.group_id = group_id
        self.bundle = bundle
        self.entropy = entropy
        self.certificates = certificates     # Every certificate of the group, by id

    @property
    def classification(self) -> Optional[EntropyClassification]:
        return self.entropy.classification if self.entropy else None

    @property
    def certificate_count(self) -> int:
        return len(self.certificates)

    def assigned_certificates(self) -> List[CertificateConfig]:
        """Certificates currently covered by a proposal (not overridden)."""
        return [self.certificates[a.certificate_id] for a in self.bundle.assignments]


class GroupProcessor:
    """Runs builder, classifier, router, generator and consolidator for a group."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        registry: Optional[HashRegistry] = None,
    ):
        self.config = config or EngineConfig()
        self.builder = ClusterBuilder(registry)
        self.classifier = EntropyClassifier(self.config)
        self.router = OverrideRouter(self.config)
        self.generator = ProposalGenerator()
        self.consolidator = ProposalConsolidator(self.config)

    def process(self, batch: GroupBatch) -> GroupOutcome:
        configs = self.builder.build_configs(batch.records)
        by_id = {c.certificate_id: c for c in configs}
        bundle = StagingBundle(
            group_ids=[batch.group_id],
            broker_assignments=collect_broker_assignments(configs),
        )

        if is_invalid_group(batch.group_id):
            bundle.overrides = self.router.route_invalid_group(configs)
            bundle.hierarchies = _hierarchies_of(configs)
            logger.debug(
                "Group %r is not a valid group key: %d certificates overridden",
                batch.group_id, len(configs),
            )
            return GroupOutcome(batch.group_id, bundle, None, by_id)

        incomplete = set(batch.incomplete_certificate_ids)
        overrides: List[PolicyHierarchyAssignment] = []
        valid: List[CertificateConfig] = []
        for c in configs:
            if c.certificate_id in incomplete:
                overrides.extend(self.router.route_incomplete(c))
            elif has_valid_split_total(c, self.config.split_total_epsilon):
                valid.append(c)
            else:
                overrides.extend(self.router.route_invalid_split(c))

        cluster_set = self.builder.cluster(valid)
        entropy = self.classifier.classify(cluster_set.clusters, group_id=batch.group_id)

        if entropy.classification == EntropyClassification.BUSINESS_DRIVEN:
            overrides.extend(self.router.route_business_driven(valid, entropy))
            qualifying: List[CertificateConfig] = []
        elif entropy.classification == EntropyClassification.HUMAN_ERROR:
            partition = self.router.split_outliers(cluster_set.clusters)
            overrides.extend(self.router.route_outliers(
                partition["outliers"], cluster_set.total_certificates, by_id
            ))
            qualifying = [
                by_id[cert_id]
                for cluster in partition["qualifying"]
                for cert_id in cluster.member_certificate_ids
            ]
        else:
            qualifying = valid

        generation = self.generator.generate(batch.group_id, qualifying)
        consolidation = self.consolidator.consolidate(generation.proposals)

        bundle.proposals = consolidation.proposals
        bundle.key_mappings = build_key_mappings(consolidation.proposals)
        bundle.assignments = [
            CertificateAssignment(
                certificate_id=cert_id,
                group_id=batch.group_id,
                proposal_id=consolidation.survivor_of(proposal_id),
            )
            for cert_id, proposal_id in sorted(generation.assignments.items())
        ]
        bundle.overrides = overrides
        bundle.hierarchies = _merge_hierarchies(
            generation.hierarchies,
            _hierarchies_of(by_id[o.certificate_id] for o in overrides),
        )
        _check_coverage(batch.group_id, by_id, bundle)

        logger.debug(
            "Group %s: %s, %d proposals (%d retained), %d overrides",
            batch.group_id, entropy.classification.value, len(consolidation.proposals),
            len(consolidation.retained), len(overrides),
        )
        return GroupOutcome(batch.group_id, bundle, entropy, by_id)


def _check_coverage(
    group_id: Optional[str], certificates: Dict[str, CertificateConfig], bundle: StagingBundle
) -> None:
    """Every certificate is either assigned to a proposal or overridden, never both."""
    assigned = {a.certificate_id for a in bundle.assignments}
    overridden = {o.certificate_id for o in bundle.overrides}
    missing = sorted(set(certificates) - assigned - overridden)
    doubled = sorted(assigned & overridden)
    if missing or doubled:
        raise InvariantViolationError(
            message=(
                f"{len(missing)} certificates unresolved, "
                f"{len(doubled)} both assigned and overridden"
            ),
            details={"unresolved": missing, "doubled": doubled},
            group_id=group_id,
        )


def _hierarchies_of(configs) -> List[HierarchyVersion]:
    versions: Dict[str, HierarchyVersion] = {}
    for c in configs:
        for split in c.splits:
            version = hierarchy_version_for(c.group_id, split)
            versions.setdefault(version.id, version)
    return [versions[k] for k in sorted(versions)]


def _merge_hierarchies(*lists: List[HierarchyVersion]) -> List[HierarchyVersion]:
    versions: Dict[str, HierarchyVersion] = {}
    for items in lists:
        for h in items:
            versions.setdefault(h.id, h)
    return [versions[k] for k in sorted(versions)]
