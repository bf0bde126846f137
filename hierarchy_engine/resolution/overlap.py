"""
Overlap Resolver: second pass that finds ambiguous coverage.

For each not-yet-overridden certificate, every retained proposal of its
group whose date range and product/plan scope (wildcards included)
contain the certificate, and whose split configuration is the
certificate's own ConfigHash, is a match. Proposals of other
configurations sharing the same key are not competitors: the granular
tier emits one per configuration for the same scope.

- exactly one match: conformant, the certificate is assigned to it
- no match: override "no matching proposal"
- several matches: override listing every conflicting proposal id; the
  ambiguity is kept for manual resolution rather than tie-broken
"""

import logging
from typing import Dict, List, Optional

from hierarchy_engine.models.hierarchy import CertificateConfig
from hierarchy_engine.models.override import PolicyHierarchyAssignment
from hierarchy_engine.models.proposal import Proposal, proposal_sort_key
from hierarchy_engine.routing.overrides import OverrideRouter

logger = logging.getLogger(__name__)


class OverlapResult:
    def __init__(
        self,
        assignments: Dict[str, str],
        overrides: List[PolicyHierarchyAssignment],
        unmatched: List[str],
        ambiguous: Dict[str, List[str]],
    ):
        self.assignments = assignments          # certificate_id -> proposal_id
        self.overrides = overrides
        self.unmatched = unmatched
        self.ambiguous = ambiguous              # certificate_id -> conflicting proposal ids


class OverlapResolver:
    """Matches certificates against retained proposals and defuses ambiguity."""

    def __init__(self, router: Optional[OverrideRouter] = None):
        self.router = router or OverrideRouter()

    def matches(
        self, certificate: CertificateConfig, proposals: List[Proposal]
    ) -> List[str]:
        """Ids of every retained proposal carrying and covering the certificate, in id order."""
        found = [
            p.id
            for p in proposals
            if p.is_retained
            and p.group_id == certificate.group_id
            and p.split_config_hash == certificate.config_hash
            and p.covers(certificate.product_code, certificate.plan_code, certificate.effective_date)
        ]
        return sorted(found, key=proposal_sort_key)

    def resolve(
        self,
        proposals: List[Proposal],
        certificates: List[CertificateConfig],
    ) -> OverlapResult:
        by_group: Dict[str, List[Proposal]] = {}
        for p in proposals:
            if p.is_retained:
                by_group.setdefault(p.group_id, []).append(p)

        assignments: Dict[str, str] = {}
        overrides: List[PolicyHierarchyAssignment] = []
        unmatched: List[str] = []
        ambiguous: Dict[str, List[str]] = {}

        for cert in sorted(certificates, key=lambda c: c.certificate_id):
            found = self.matches(cert, by_group.get(cert.group_id, []))
            if len(found) == 1:
                assignments[cert.certificate_id] = found[0]
            elif not found:
                unmatched.append(cert.certificate_id)
                overrides.extend(self.router.route_unmatched(cert))
            else:
                ambiguous[cert.certificate_id] = found
                overrides.extend(self.router.route_overlapping(cert, found))

        if unmatched or ambiguous:
            logger.info(
                "Overlap pass: %d conformant, %d unmatched, %d ambiguous",
                len(assignments), len(unmatched), len(ambiguous),
            )
        return OverlapResult(
            assignments=assignments,
            overrides=overrides,
            unmatched=unmatched,
            ambiguous=ambiguous,
        )
