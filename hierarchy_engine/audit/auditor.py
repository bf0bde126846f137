"""
Conformance Auditor: read-only verification of persisted output.

Looks every certificate up through ProposalKeyMapping rows, keeping only
rows whose split configuration is the certificate's own ConfigHash,
classifies it as Conformant / NoMatch / MultipleMatches and aggregates
per group. Used as a pre-export gate: a group fails when it is below the
gate and some non-conformant certificate has no override explaining it.
"""

import logging
import random
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Set, Tuple

from hierarchy_engine.clustering.builder import ClusterBuilder
from hierarchy_engine.models.config import EngineConfig
from hierarchy_engine.models.hierarchy import WILDCARD
from hierarchy_engine.models.override import PolicyHierarchyAssignment
from hierarchy_engine.models.proposal import ProposalKeyMapping, proposal_sort_key
from hierarchy_engine.models.records import CertificateRecord
from hierarchy_engine.models.report import (
    CertificateConformance,
    ConformanceReport,
    ConformanceStatus,
    GroupConformance,
)

logger = logging.getLogger(__name__)

MappingKey = Tuple[Optional[str], int, str, str]

# (proposal_id, split_config_hash) pairs per key
MappingIndex = Dict[MappingKey, Set[Tuple[str, str]]]


def _index_mappings(mappings: Iterable[ProposalKeyMapping]) -> MappingIndex:
    index: MappingIndex = {}
    for m in mappings:
        key = (m.group_id, m.effective_year, m.product_code, m.plan_code)
        index.setdefault(key, set()).add((m.proposal_id, m.split_config_hash))
    return index


def _classify_group(fraction: float, gate: float) -> str:
    if fraction >= 1.0:
        return "Conformant"
    if fraction >= gate:
        return "Nearly Conformant"
    return "Non-Conformant"


class ConformanceAuditor:
    """Stateless: everything it needs is passed to audit()."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def lookup(
        self,
        index: MappingIndex,
        group_id: Optional[str],
        year: int,
        product_code: str,
        plan_code: str,
        config_hash: str,
    ) -> List[str]:
        """Ids of proposals of config_hash mapped to a certificate key, wildcard rows included."""
        found: Set[str] = set()
        for product in (product_code, WILDCARD):
            for plan in (plan_code, WILDCARD):
                for proposal_id, mapped_hash in index.get((group_id, year, product, plan), ()):
                    if mapped_hash == config_hash:
                        found.add(proposal_id)
        return sorted(found, key=proposal_sort_key)

    def audit(
        self,
        records: Iterable[CertificateRecord],
        mappings: Iterable[ProposalKeyMapping],
        overrides: Iterable[PolicyHierarchyAssignment] = (),
        sample_size: Optional[int] = None,
        seed: int = 0,
    ) -> ConformanceReport:
        """
        Audit every certificate in records, or a reproducible random sample
        of sample_size certificates.
        """
        certificates: "OrderedDict[str, List[CertificateRecord]]" = OrderedDict()
        for r in records:
            certificates.setdefault(r.certificate_id, []).append(r)

        cert_ids = sorted(certificates)
        if sample_size is not None and sample_size < len(cert_ids):
            cert_ids = sorted(random.Random(seed).sample(cert_ids, sample_size))

        index = _index_mappings(mappings)
        overridden = {o.certificate_id for o in overrides}
        builder = ClusterBuilder()

        results: List[CertificateConformance] = []
        for cert_id in cert_ids:
            record = certificates[cert_id][0]
            plan = record.plan_code or WILDCARD
            config_hash = builder.build_config(certificates[cert_id]).config_hash
            matched = self.lookup(
                index, record.group_id, record.effective_year, record.product_code, plan,
                config_hash,
            )
            if len(matched) == 1:
                status = ConformanceStatus.CONFORMANT
            elif not matched:
                status = ConformanceStatus.NO_MATCH
            else:
                status = ConformanceStatus.MULTIPLE_MATCHES
            results.append(CertificateConformance(
                certificate_id=cert_id,
                group_id=record.group_id,
                effective_year=record.effective_year,
                product_code=record.product_code,
                plan_code=plan,
                status=status,
                matched_proposal_ids=matched,
                has_override=cert_id in overridden,
            ))

        report = ConformanceReport(
            gate=self.config.conformance_gate,
            certificates=results,
            groups=self._aggregate(results),
        )
        if not report.passed:
            logger.warning(
                "Conformance gate failed for %d of %d groups",
                len(report.failing_groups), len(report.groups),
            )
        return report

    def _aggregate(self, results: List[CertificateConformance]) -> List[GroupConformance]:
        by_group: Dict[Optional[str], List[CertificateConformance]] = {}
        for r in results:
            by_group.setdefault(r.group_id, []).append(r)

        gate = self.config.conformance_gate
        groups = []
        for group_id in sorted(by_group, key=lambda g: (g is None, g or "")):
            rows = by_group[group_id]
            total = len(rows)
            conformant = sum(1 for r in rows if r.status == ConformanceStatus.CONFORMANT)
            no_match = sum(1 for r in rows if r.status == ConformanceStatus.NO_MATCH)
            multiple = sum(1 for r in rows if r.status == ConformanceStatus.MULTIPLE_MATCHES)
            explained = sum(
                1 for r in rows
                if r.status != ConformanceStatus.CONFORMANT and r.has_override
            )
            fraction = conformant / total
            groups.append(GroupConformance(
                group_id=group_id,
                total_certificates=total,
                conformant=conformant,
                no_match=no_match,
                multiple_matches=multiple,
                explained_by_override=explained,
                conformance_percent=round(fraction * 100, 2),
                classification=_classify_group(fraction, gate),
                passes_gate=fraction >= gate or explained == no_match + multiple,
            ))
        return groups
