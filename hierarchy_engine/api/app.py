"""
Resolution Engine API: FastAPI endpoints.

A thin service surface for an external orchestrator:
- Run submission over raw certificate rows
- Run report lookup
- Engine configuration
- Staged proposals, key mappings and overrides
- Conformance auditing against staged output
"""

from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from hierarchy_engine.audit.auditor import ConformanceAuditor
from hierarchy_engine.engine.runner import ResolutionRunner
from hierarchy_engine.errors import ConfigurationError, MalformedRecordError
from hierarchy_engine.models.config import EngineConfig
from hierarchy_engine.models.report import RunReport
from hierarchy_engine.staging.reader import InMemoryReader, parse_record
from hierarchy_engine.staging.writer import InMemoryStagingWriter, StagingStore


# --- Request/Response Models ---

class RunRequest(BaseModel):
    records: List[dict]
    dry_run: Optional[bool] = None
    start_chunk: int = 0


class AuditRequest(BaseModel):
    records: List[dict]
    sample_size: Optional[int] = None
    seed: int = 0


# --- Application Factory ---

def create_app(
    config: Optional[EngineConfig] = None,
    writer: Optional[StagingStore] = None,
) -> FastAPI:
    """Create and configure the FastAPI application. Staging defaults to in-memory."""

    app = FastAPI(
        title="Commission Hierarchy Resolution Engine API",
        description="Resolves broker commission splits into proposals and overrides",
        version="0.1.0",
    )

    staging: StagingStore = writer if writer is not None else InMemoryStagingWriter()
    runs: Dict[str, RunReport] = {}

    app.state.config = config or EngineConfig()
    app.state.writer = staging
    app.state.runs = runs

    # === RUNS ===

    @app.post("/runs")
    def submit_run(req: RunRequest):
        """Resolve the submitted rows and stage the result."""
        cfg = app.state.config
        if req.dry_run is not None:
            cfg = cfg.model_copy(update={"dry_run": req.dry_run})
        runner = ResolutionRunner(config=cfg, writer=staging)
        try:
            result = runner.run(InMemoryReader(req.records), start_chunk=req.start_chunk)
        except ConfigurationError as exc:
            raise HTTPException(422, exc.to_dict())
        runs[result.report.run_id] = result.report
        return result.report.model_dump(mode="json")

    @app.get("/runs")
    def list_runs():
        """All run reports, oldest first."""
        return [r.model_dump(mode="json") for r in runs.values()]

    @app.get("/runs/{run_id}")
    def get_run(run_id: str):
        if run_id not in runs:
            raise HTTPException(404, "Run not found")
        return runs[run_id].model_dump(mode="json")

    # === CONFIG ===

    @app.get("/config")
    def get_config():
        """Current engine configuration."""
        return app.state.config.model_dump()

    @app.put("/config")
    def update_config(config: EngineConfig):
        """Replace the engine configuration. Rejected if any threshold is invalid."""
        try:
            app.state.config = config.ensure_valid()
        except ConfigurationError as exc:
            raise HTTPException(422, exc.to_dict())
        return app.state.config.model_dump()

    # === STAGED OUTPUT ===

    @app.get("/groups/{group_id}/proposals")
    def get_group_proposals(group_id: str, include_consumed: bool = True):
        proposals = staging.proposals(group_id)
        if not include_consumed:
            proposals = [p for p in proposals if p.is_retained]
        return [p.model_dump(mode="json") for p in proposals]

    @app.get("/groups/{group_id}/key-mappings")
    def get_group_key_mappings(group_id: str):
        return [m.model_dump(mode="json") for m in staging.key_mappings(group_id)]

    @app.get("/groups/{group_id}/overrides")
    def get_group_overrides(group_id: str):
        return [o.model_dump(mode="json") for o in staging.overrides(group_id)]

    # === AUDIT ===

    @app.post("/audit")
    def audit(req: AuditRequest):
        """Conformance of the submitted certificates against staged key mappings."""
        records = []
        rejected = 0
        for raw in req.records:
            try:
                records.append(parse_record(raw))
            except MalformedRecordError:
                rejected += 1
        auditor = ConformanceAuditor(app.state.config)
        report = auditor.audit(
            records,
            staging.key_mappings(),
            staging.overrides(),
            sample_size=req.sample_size,
            seed=req.seed,
        )
        body = report.model_dump(mode="json")
        body["passed"] = report.passed
        body["rejected_records"] = rejected
        return body

    return app


# Default application instance
app = create_app()
