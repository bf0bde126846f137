"""
Input Reader: validates raw rows into CertificateRecords at the boundary
and hands them to the core grouped by business group key.
"""

import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

from pydantic import ValidationError

from hierarchy_engine.errors import MalformedRecordError
from hierarchy_engine.models.records import CertificateRecord, GroupBatch, SkippedRecord

logger = logging.getLogger(__name__)

# Source column names accepted alongside the field names.
COLUMN_ALIASES = {
    "CertificateId": "certificate_id",
    "GroupId": "group_id",
    "Product": "product_code",
    "ProductCode": "product_code",
    "PlanCode": "plan_code",
    "CertEffectiveDate": "effective_date",
    "CertSplitSeq": "split_sequence",
    "CertSplitPercent": "split_percent",
    "SplitBrokerSeq": "broker_level",
    "SplitBrokerId": "broker_id",
    "CommissionSchedule": "schedule_code",
    "PaidBrokerId": "paid_broker_id",
}

MISSING_PLAN_CODES = {"", "NULL", "N/A"}

STRING_FIELDS = {
    "certificate_id",
    "group_id",
    "product_code",
    "plan_code",
    "broker_id",
    "schedule_code",
    "paid_broker_id",
}


class InputReader(Protocol):
    """Supplies certificate records grouped by group key."""

    skipped: List[SkippedRecord]

    def read_groups(self) -> Iterator[GroupBatch]: ...


def _clean(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def parse_record(raw: Dict[str, Any]) -> CertificateRecord:
    """
    Normalise and validate one raw row.

    Raises MalformedRecordError for unparseable dates or percents and for
    missing required fields.
    """
    data: Dict[str, Any] = {}
    for key, value in raw.items():
        name = COLUMN_ALIASES.get(key, key)
        value = _clean(value)
        if name in STRING_FIELDS and isinstance(value, (int, float)):
            value = str(value)
        data[name] = value

    plan = data.get("plan_code")
    if plan is not None and str(plan).upper() in MISSING_PLAN_CODES:
        data["plan_code"] = None

    try:
        return CertificateRecord.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in e["loc"]) for e in exc.errors()})
        raise MalformedRecordError(
            message=f"Unparseable record: invalid {', '.join(fields)}",
            details={"errors": exc.errors(include_url=False, include_context=False)},
            group_id=data.get("group_id"),
            certificate_id=None if data.get("certificate_id") is None else str(data["certificate_id"]),
        ) from exc


class InMemoryReader:
    """
    Reader over already-loaded rows (dicts).

    Groups are yielded in first-seen order; records inside a group are
    sorted by (certificate_id, split_sequence, broker_level). A certificate
    that lost any row to validation is listed as incomplete on its batch.
    """

    def __init__(self, rows: Iterable[Dict[str, Any]]):
        self._rows = rows
        self.skipped: List[SkippedRecord] = []

    def read_groups(self) -> Iterator[GroupBatch]:
        self.skipped = []
        groups: Dict[Optional[str], List[CertificateRecord]] = {}
        for raw in self._rows:
            try:
                record = parse_record(raw)
            except MalformedRecordError as exc:
                logger.warning(
                    "Skipping record for certificate %s: %s",
                    exc.certificate_id or "<unknown>", exc.message,
                )
                self.skipped.append(SkippedRecord(
                    certificate_id=exc.certificate_id,
                    group_id=exc.group_id,
                    code=exc.code,
                    reason=exc.message,
                ))
                continue
            groups.setdefault(record.group_id, []).append(record)

        rejected = {s.certificate_id for s in self.skipped if s.certificate_id}
        for group_id, records in groups.items():
            records.sort(key=lambda r: (r.certificate_id, r.split_sequence, r.broker_level))
            yield GroupBatch(
                group_id=group_id,
                records=records,
                incomplete_certificate_ids=sorted({r.certificate_id for r in records} & rejected),
            )
