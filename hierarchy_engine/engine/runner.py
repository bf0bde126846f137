"""
Resolution Runner: drives a full run over an Input Reader.

Processing model:
- Configuration is validated before anything else; a ConfigurationError
  is the only fatal error.
- Groups are partitioned into chunks of `chunk_size` groups. Inside a
  chunk groups run sequentially; chunks may run on a bounded thread pool.
  Each chunk owns a disjoint set of group keys, so no two workers ever
  produce rows for the same key.
- After its groups' first pass, a chunk runs the overlap pass over its
  retained proposals. Proposals only ever match certificates of their own
  group, so this equals one global pass after all groups.
- A chunk's bundle is written only once the whole chunk is done (atomic at
  chunk granularity). Cancellation is checked between chunks only.
- A group that raises is recorded in the report and skipped; the run
  continues.
"""

import logging
import threading
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from itertools import islice
from typing import Dict, Iterator, List, Optional, Set
from uuid import uuid4

from hierarchy_engine.clustering.builder import HashRegistry
from hierarchy_engine.errors import EngineError, StagingWriteError
from hierarchy_engine.engine.processor import GroupOutcome, GroupProcessor
from hierarchy_engine.models.config import EngineConfig
from hierarchy_engine.models.proposal import CertificateAssignment
from hierarchy_engine.models.records import GroupBatch
from hierarchy_engine.models.report import GroupFailure, RunReport
from hierarchy_engine.models.staging import StagingBundle
from hierarchy_engine.resolution.overlap import OverlapResolver
from hierarchy_engine.routing.overrides import OverrideRouter
from hierarchy_engine.staging.reader import InputReader
from hierarchy_engine.staging.writer import StagingWriter

logger = logging.getLogger(__name__)


class ChunkResult:
    """Output of one chunk: its bundle plus per-group bookkeeping."""

    def __init__(
        self,
        index: int,
        bundle: StagingBundle,
        outcomes: List[GroupOutcome],
        failures: List[GroupFailure],
    ):
        self.index = index
        self.bundle = bundle
        self.outcomes = outcomes
        self.failures = failures


class RunResult:
    """Report plus the combined bundle of every completed chunk."""

    def __init__(self, report: RunReport, bundle: StagingBundle):
        self.report = report
        self.bundle = bundle


class ResolutionRunner:
    """Orchestrates chunked, optionally concurrent resolution of all groups."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        writer: Optional[StagingWriter] = None,
    ):
        self.config = config or EngineConfig()
        self.writer = writer

    def run(
        self,
        reader: InputReader,
        cancel_event: Optional[threading.Event] = None,
        start_chunk: int = 0,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """
        Resolve every group the reader supplies.

        start_chunk resumes a previous run: chunks before it are read but not
        processed. The report's next_chunk_index is where to resume from.
        """
        cfg = self.config.ensure_valid()
        report = RunReport(
            run_id=run_id or f"run_{uuid4().hex[:12]}",
            started_at=datetime.now(timezone.utc),
            dry_run=cfg.dry_run,
        )
        registry = HashRegistry()
        logger.info(
            "Run %s started (chunk_size=%d, max_workers=%d, dry_run=%s, start_chunk=%d)",
            report.run_id, cfg.chunk_size, cfg.max_workers, cfg.dry_run, start_chunk,
        )

        results: Dict[int, ChunkResult] = {}
        completed: Set[int] = set()
        pending: Dict[Future, int] = {}

        with ThreadPoolExecutor(max_workers=cfg.max_workers) as executor:
            for index, chunk in enumerate(self._chunks(reader, report)):
                if index < start_chunk:
                    continue
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    logger.info("Run %s cancelled before chunk %d", report.run_id, index)
                    break
                if report.aborted is not None:
                    break
                pending[executor.submit(self._process_chunk, index, chunk, registry)] = index
                if len(pending) >= cfg.max_workers:
                    done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
                    self._collect(done, pending, results, completed, report)

            while pending:
                done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
                self._collect(done, pending, results, completed, report)

        bundle = StagingBundle()
        for index in sorted(results):
            bundle.extend(results[index].bundle)
            self._tally(results[index], report)

        report.skipped_records = len(reader.skipped)
        report.warnings.extend(
            f"skipped record for certificate {s.certificate_id or '<unknown>'}: {s.reason}"
            for s in reader.skipped
        )
        report.hash_collisions = registry.collision_count
        report.chunks_completed = len(completed)
        report.next_chunk_index = _first_gap(start_chunk, completed)
        report.completed_at = datetime.now(timezone.utc)

        logger.info(
            "Run %s finished: %d groups, %d proposals retained, %d overrides, "
            "%d skipped records, %d failed groups%s",
            report.run_id, report.groups_processed, report.proposals_retained,
            report.overrides_total, report.skipped_records, len(report.groups_failed),
            " (cancelled)" if report.cancelled else "",
        )
        return RunResult(report=report, bundle=bundle)

    def _chunks(self, reader: InputReader, report: RunReport) -> Iterator[List[GroupBatch]]:
        excluded = {g.strip() for g in self.config.excluded_groups}

        def included() -> Iterator[GroupBatch]:
            for batch in reader.read_groups():
                if batch.group_id is not None and batch.group_id.strip() in excluded:
                    report.groups_excluded += 1
                    logger.info("Group %s excluded by configuration", batch.group_id)
                    continue
                yield batch

        batches = included()
        while True:
            chunk = list(islice(batches, self.config.chunk_size))
            if not chunk:
                return
            yield chunk

    def _process_chunk(
        self, index: int, batches: List[GroupBatch], registry: HashRegistry
    ) -> ChunkResult:
        processor = GroupProcessor(self.config, registry)
        outcomes: List[GroupOutcome] = []
        failures: List[GroupFailure] = []

        for batch in batches:
            try:
                outcomes.append(processor.process(batch))
            except Exception as exc:
                error = exc.to_dict() if isinstance(exc, EngineError) else {
                    "code": "HE_GROUP_FAILED",
                    "message": str(exc),
                    "type": type(exc).__name__,
                }
                logger.warning(
                    "Group %s failed and was skipped: %s", batch.group_id, exc, exc_info=True
                )
                failures.append(GroupFailure(
                    group_id=batch.group_id,
                    certificate_count=len(batch.certificate_ids),
                    error=error,
                ))

        bundle = StagingBundle()
        for outcome in outcomes:
            bundle.extend(outcome.bundle)
        self._resolve_overlaps(bundle, outcomes)
        logger.info(
            "Chunk %d processed: %d groups, %d failed", index, len(outcomes), len(failures)
        )
        return ChunkResult(index=index, bundle=bundle, outcomes=outcomes, failures=failures)

    def _resolve_overlaps(self, bundle: StagingBundle, outcomes: List[GroupOutcome]) -> None:
        """Second pass: replace first-pass assignments with verified single matches."""
        resolver = OverlapResolver(OverrideRouter(self.config))
        certificates = [c for o in outcomes for c in o.assigned_certificates()]
        result = resolver.resolve(bundle.proposals, certificates)
        groups = {c.certificate_id: c.group_id for c in certificates}
        bundle.assignments = [
            CertificateAssignment(
                certificate_id=cert_id,
                group_id=groups[cert_id],
                proposal_id=proposal_id,
            )
            for cert_id, proposal_id in sorted(result.assignments.items())
        ]
        bundle.overrides.extend(result.overrides)

    def _collect(
        self,
        done,
        pending: Dict[Future, int],
        results: Dict[int, ChunkResult],
        completed: Set[int],
        report: RunReport,
    ) -> None:
        """Write finished chunks from the coordinating thread, in index order."""
        for future in sorted(done, key=lambda f: pending[f]):
            index = pending.pop(future)
            chunk = future.result()
            if report.aborted is not None:
                continue
            if self.writer is not None and not self.config.dry_run:
                try:
                    self.writer.write(chunk.bundle)
                except StagingWriteError as exc:
                    logger.error("Run %s: chunk %d not staged: %s", report.run_id, index, exc)
                    report.aborted = exc.to_dict()
                    continue
            results[index] = chunk
            completed.add(index)

    def _tally(self, chunk: ChunkResult, report: RunReport) -> None:
        classifications = Counter(report.classifications)
        reasons = Counter(report.overrides_by_reason)
        for outcome in chunk.outcomes:
            report.groups_processed += 1
            report.certificates_processed += outcome.certificate_count
            if outcome.classification is not None:
                classifications[outcome.classification.value] += 1
        for o in chunk.bundle.overrides:
            reasons[o.reason_code.value] += 1
        for failure in chunk.failures:
            report.groups_failed.append(failure)
            report.warnings.append(
                f"group {failure.group_id} failed: {failure.error.get('message', '')}"
            )
        report.proposals_retained += len(chunk.bundle.retained_proposals)
        report.proposals_consumed += len(chunk.bundle.proposals) - len(chunk.bundle.retained_proposals)
        report.key_mappings += len(chunk.bundle.key_mappings)
        report.classifications = dict(sorted(classifications.items()))
        report.overrides_by_reason = dict(sorted(reasons.items()))


def _first_gap(start: int, completed: Set[int]) -> int:
    """Index of the first chunk at or after start that did not complete."""
    index = start
    while index in completed:
        index += 1
    return index
