"""Row and record factories shared by the test modules."""

from datetime import date
from typing import List, Optional, Sequence, Tuple

from hierarchy_engine.models.proposal import MatchingTier, Proposal
from hierarchy_engine.models.records import CertificateRecord, GroupBatch

# (split_percent, [broker ids by ascending level])
Split = Tuple[float, Sequence[str]]


def make_rows(
    certificate_id: str,
    group_id: Optional[str] = "G1",
    product: str = "A",
    plan: Optional[str] = "P1",
    effective: str = "2024-03-01",
    splits: Optional[List[Split]] = None,
) -> List[dict]:
    """Raw reader rows for one certificate, one row per (split, tier)."""
    splits = splits or [(100.0, ["B1"])]
    rows = []
    for seq, (percent, brokers) in enumerate(splits, start=1):
        for level, broker in enumerate(brokers, start=1):
            rows.append({
                "certificate_id": certificate_id,
                "group_id": group_id,
                "product_code": product,
                "plan_code": plan,
                "effective_date": effective,
                "split_sequence": seq,
                "split_percent": percent,
                "broker_level": level,
                "broker_id": broker,
                "schedule_code": f"SCH-{broker}",
            })
    return rows


def make_records(certificate_id: str, **kwargs) -> List[CertificateRecord]:
    return [CertificateRecord(**row) for row in make_rows(certificate_id, **kwargs)]


def make_batch(group_id: Optional[str], rows: List[dict]) -> GroupBatch:
    records = sorted(
        (CertificateRecord(**r) for r in rows),
        key=lambda r: (r.certificate_id, r.split_sequence, r.broker_level),
    )
    return GroupBatch(group_id=group_id, records=records)


def uniform_group_rows(
    group_id: str,
    count: int,
    brokers: Sequence[str] = ("B1",),
    prefix: str = "C",
    start: int = 0,
    **kwargs,
) -> List[dict]:
    """count certificates sharing one single-split configuration."""
    rows = []
    for i in range(start, start + count):
        rows.extend(make_rows(
            f"{prefix}{i:04d}",
            group_id=group_id,
            splits=[(100.0, list(brokers))],
            **kwargs,
        ))
    return rows


def make_proposal(
    proposal_id: str,
    effective_from: date,
    effective_to: date,
    config_hash: str = "H" * 64,
    group_id: str = "G1",
    scope: Optional[List[Tuple[str, str]]] = None,
    tier: MatchingTier = MatchingTier.GRANULAR,
) -> Proposal:
    return Proposal(
        id=proposal_id,
        group_id=group_id,
        tier=tier,
        scope=scope or [("A", "P1")],
        effective_from=effective_from,
        effective_to=effective_to,
        split_config_hash=config_hash,
        certificate_count=1,
    )
