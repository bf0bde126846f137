"""
Signature & Cluster Builder: turns raw split rows into content-addressed
certificate configurations and groups them into clusters.

Hash contract:
- A hierarchy hash covers {groupId, splitPercent, tiers[level, brokerId, schedule]}
  with tiers in ascending broker level. Paid-broker ids are excluded.
- A ConfigHash covers the ordered list of {pct, hierarchyHash} for every
  split of the certificate. Split sequence numbers are excluded.
- Serialization is canonical JSON (sorted keys, no whitespace); digests are
  64 uppercase hex characters of sha256.

Everything here is pure apart from the HashRegistry, which only remembers
what it has hashed so it can detect collisions.
"""

import hashlib
import json
import threading
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Sequence

from hierarchy_engine.errors import HashCollisionError
from hierarchy_engine.models.hierarchy import (
    WILDCARD,
    BrokerAssignment,
    CertificateConfig,
    Cluster,
    ClusterSet,
    HierarchyTier,
    SplitSignature,
)
from hierarchy_engine.models.records import CertificateRecord


def canonical_json(payload: Any) -> str:
    """Deterministic JSON text: sorted keys, compact separators."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest().upper()


def _percent(value: float) -> float:
    return round(float(value), 6)


def hierarchy_payload(
    group_id: Optional[str], split_percent: float, tiers: Sequence[HierarchyTier]
) -> str:
    """Canonical serialization of one split hierarchy, tiers in the given order."""
    return canonical_json({
        "groupId": group_id,
        "splitPercent": _percent(split_percent),
        "tiers": [
            {"level": t.level, "brokerId": t.broker_id, "schedule": t.schedule_code}
            for t in tiers
        ],
    })


def config_payload(splits: Sequence[Dict[str, Any]]) -> str:
    """Canonical serialization of a certificate's splits ({pct, hierarchyHash})."""
    return canonical_json([
        {"pct": _percent(s["pct"]), "hierarchyHash": s["hierarchyHash"]}
        for s in splits
    ])


def compute_hierarchy_hash(
    group_id: Optional[str], split_percent: float, tiers: Sequence[HierarchyTier]
) -> str:
    return sha256_hex(hierarchy_payload(group_id, split_percent, tiers))


def compute_config_hash(
    group_id: Optional[str], splits: Sequence[Sequence[Any]]
) -> str:
    """
    ConfigHash for a sequence of (split_percent, tiers) pairs.

    Tier order is taken as given: callers that want the canonical hash must
    pass tiers in ascending level, which is what ClusterBuilder does.
    """
    return sha256_hex(config_payload([
        {"pct": pct, "hierarchyHash": compute_hierarchy_hash(group_id, pct, tiers)}
        for pct, tiers in splits
    ]))


def fingerprint(text: str) -> str:
    """Independent 128-bit blake2b digest, kept in place of the payload itself."""
    return hashlib.blake2b(text.encode("utf-8"), digest_size=16).hexdigest()


class HashRegistry:
    """
    Run-wide memory of digest → fingerprint of its serialized input.

    Two different payloads with one sha256 digest carry different
    fingerprints, so a collision is still detected while the registry
    holds a fixed 32 hex characters per digest rather than every payload.
    Shared by all workers of a run, so access is serialized with a lock.
    """

    def __init__(self):
        self._seen: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.collision_count = 0

    def digest(self, payload: str, context: str = "") -> str:
        """Hash a payload, raising HashCollisionError on a true collision."""
        digest = sha256_hex(payload)
        mark = fingerprint(payload)
        with self._lock:
            existing = self._seen.get(digest)
            if existing is not None and existing != mark:
                self.collision_count += 1
                raise HashCollisionError(
                    message=f"Hash collision detected for {context}: {digest}",
                    details={
                        "existing_fingerprint": existing,
                        "new_fingerprint": mark,
                        "payload": payload,
                    },
                )
            self._seen[digest] = mark
        return digest

    def __len__(self) -> int:
        return len(self._seen)


class ClusterBuilder:
    """Builds HierarchySignatures, ConfigHashes and Clusters for one key slice."""

    def __init__(self, registry: Optional[HashRegistry] = None):
        self.registry = registry or HashRegistry()

    def build(self, records: Iterable[CertificateRecord]) -> ClusterSet:
        """Records of one slice → clusters plus the slice's certificate count."""
        return self.cluster(self.build_configs(records))

    def build_configs(self, records: Iterable[CertificateRecord]) -> List[CertificateConfig]:
        """One CertificateConfig per certificate, sorted by certificate id."""
        by_cert: "OrderedDict[str, List[CertificateRecord]]" = OrderedDict()
        for r in records:
            by_cert.setdefault(r.certificate_id, []).append(r)
        return [
            self.build_config(by_cert[cert_id])
            for cert_id in sorted(by_cert)
        ]

    def build_config(self, rows: List[CertificateRecord]) -> CertificateConfig:
        """Signatures and ConfigHash for all rows of one certificate."""
        head = rows[0]
        by_split: Dict[int, List[CertificateRecord]] = {}
        for r in rows:
            by_split.setdefault(r.split_sequence, []).append(r)

        splits: List[SplitSignature] = []
        for seq in sorted(by_split):
            split_rows = sorted(by_split[seq], key=lambda r: r.broker_level)
            split_percent = split_rows[0].split_percent
            tiers = [
                HierarchyTier(
                    level=r.broker_level,
                    broker_id=r.broker_id,
                    schedule_code=r.schedule_code,
                    paid_broker_id=r.paid_broker_id,
                )
                for r in split_rows
            ]
            hierarchy_hash = self.registry.digest(
                hierarchy_payload(head.group_id, split_percent, tiers),
                context=f"hierarchy-{head.certificate_id}-{seq}",
            )
            splits.append(SplitSignature(
                split_sequence=seq,
                split_percent=split_percent,
                tiers=tiers,
                hierarchy_hash=hierarchy_hash,
            ))

        config_hash = self.registry.digest(
            config_payload([
                {"pct": s.split_percent, "hierarchyHash": s.hierarchy_hash}
                for s in splits
            ]),
            context=f"config-{head.certificate_id}",
        )
        return CertificateConfig(
            certificate_id=head.certificate_id,
            group_id=head.group_id,
            product_code=head.product_code,
            plan_code=head.plan_code,
            effective_date=head.effective_date,
            splits=splits,
            config_hash=config_hash,
        )

    def cluster(
        self,
        configs: Sequence[CertificateConfig],
        product_code: str = WILDCARD,
        plan_code: str = WILDCARD,
        effective_year: Optional[int] = None,
    ) -> ClusterSet:
        """
        Group configurations by ConfigHash.

        Clusters are ordered by descending size, then hash, so the first
        cluster is always the dominant one.
        """
        members: Dict[str, List[CertificateConfig]] = {}
        for c in configs:
            members.setdefault(c.config_hash, []).append(c)

        clusters = []
        for config_hash, group in members.items():
            ordered = sorted(group, key=lambda c: c.certificate_id)
            scope = sorted({(c.product_code, c.plan_or_wildcard) for c in ordered})
            clusters.append(Cluster(
                config_hash=config_hash,
                group_id=ordered[0].group_id,
                product_code=product_code,
                plan_code=plan_code,
                effective_year=effective_year,
                member_certificate_ids=[c.certificate_id for c in ordered],
                record_count=len(ordered),
                representative=ordered[0],
                scope=scope,
                date_from=min(c.effective_date for c in ordered),
                date_to=max(c.effective_date for c in ordered),
            ))
        clusters.sort(key=lambda cl: (-cl.record_count, cl.config_hash))
        return ClusterSet(clusters=clusters, total_certificates=len(configs))


def collect_broker_assignments(configs: Iterable[CertificateConfig]) -> List[BrokerAssignment]:
    """
    Tiers whose paid broker differs from the split broker, keeping the most
    recent certificate effective date per source broker.
    """
    latest: Dict[str, BrokerAssignment] = {}
    for c in configs:
        for split in c.splits:
            for tier in split.tiers:
                paid = (tier.paid_broker_id or "").strip()
                source = (tier.broker_id or "").strip()
                if not paid or not source or paid == source:
                    continue
                existing = latest.get(source)
                if existing is None or c.effective_date > existing.effective_date:
                    latest[source] = BrokerAssignment(
                        source_broker_id=source,
                        recipient_broker_id=paid,
                        effective_date=c.effective_date,
                    )
    return [latest[k] for k in sorted(latest)]
