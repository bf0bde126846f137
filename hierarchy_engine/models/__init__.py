"""Resolution engine data models."""

from hierarchy_engine.models.config import EngineConfig
from hierarchy_engine.models.entropy import EntropyClassification, EntropyResult
from hierarchy_engine.models.hierarchy import (
    WILDCARD,
    BrokerAssignment,
    CertificateConfig,
    Cluster,
    ClusterSet,
    HierarchyParticipant,
    HierarchyTier,
    HierarchyVersion,
    SplitSignature,
)
from hierarchy_engine.models.override import OverrideReason, PolicyHierarchyAssignment
from hierarchy_engine.models.proposal import (
    CertificateAssignment,
    MatchingTier,
    Proposal,
    ProposalKeyMapping,
    ProposalSplit,
    ProposalStatus,
)
from hierarchy_engine.models.records import CertificateRecord, GroupBatch, SkippedRecord
from hierarchy_engine.models.report import (
    CertificateConformance,
    ConformanceReport,
    ConformanceStatus,
    GroupConformance,
    GroupFailure,
    RunReport,
)
from hierarchy_engine.models.staging import StagingBundle

__all__ = [
    "BrokerAssignment",
    "CertificateAssignment",
    "CertificateConfig",
    "CertificateConformance",
    "CertificateRecord",
    "Cluster",
    "ClusterSet",
    "ConformanceReport",
    "ConformanceStatus",
    "EngineConfig",
    "EntropyClassification",
    "EntropyResult",
    "GroupBatch",
    "GroupConformance",
    "GroupFailure",
    "HierarchyParticipant",
    "HierarchyTier",
    "HierarchyVersion",
    "MatchingTier",
    "OverrideReason",
    "PolicyHierarchyAssignment",
    "Proposal",
    "ProposalKeyMapping",
    "ProposalSplit",
    "ProposalStatus",
    "RunReport",
    "SkippedRecord",
    "SplitSignature",
    "StagingBundle",
    "WILDCARD",
]
