from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import sqlalchemy as sa
from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import EngineConfig, load_config
from ..controller import RunController
from ..loader import load_workflow
from ..model import Event, Run, WorkflowDefinition, now_utc
from ..report import JobReport, RunReport, run_report
from ..secrets import SecretProvider
from ..slots import SlotPool
from ..steps import StepRegistry
from ..ui.console import Console
from . import settings
from .db import make_engine, make_sessionmaker
from .models import Base, JobRecord, RunRecord

log = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    kind: Optional[str] = None
    ref: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

class EventResponse(BaseModel):
    accepted: bool
    reason: str
    run_id: Optional[str] = None

class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool

# -------------------- App factory --------------------

def create_app(
    workflow: Optional[WorkflowDefinition] = None,
    *,
    database_url: Optional[str] = None,
    config: Optional[EngineConfig] = None,
    registry: Optional[StepRegistry] = None,
    secrets: Optional[SecretProvider] = None,
    slots: Optional[SlotPool] = None,
) -> FastAPI:
    """
    Webhook service for one workflow.

    Incoming events are trigger-checked; accepted events start a run in the
    background. Live runs are served from the controller, finished runs from
    the archive database.
    """
    if workflow is None:
        if not settings.WORKFLOW:
            raise RuntimeError("No workflow configured (set RELAYCI_WORKFLOW)")
        workflow = load_workflow(settings.WORKFLOW)
    if config is None:
        config = load_config(settings.ENGINE_CONFIG)

    controller = RunController(
        workflow,
        config=config,
        registry=registry,
        secrets=secrets,
        slots=slots,
        console=Console(quiet=True),
    )
    engine = make_engine(database_url or settings.DATABASE_URL)
    SessionLocal = make_sessionmaker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield
        controller.cancel()
        await engine.dispose()

    app = FastAPI(title="relayci webhook service", lifespan=lifespan)
    app.state.controller = controller

    async def archive(run: Run) -> None:
        report = run_report(run)
        async with SessionLocal() as s:
            async with s.begin():
                record = await s.get(RunRecord, run.id)
                if record is None:
                    record = RunRecord(id=run.id, workflow=run.workflow.name, event=run.event.kind, ref=run.event.ref, status=run.status.value)
                    s.add(record)
                record.status = run.status.value
                record.finished_at = run.finished_at or now_utc()
                record.report = report.model_dump(mode="json")
                for job in report.jobs:
                    s.add(JobRecord(
                        run_id=run.id,
                        name=job.name,
                        status=job.status,
                        reason=job.reason,
                        steps=[st.model_dump(mode="json") for st in job.steps],
                    ))
        controller.forget(run.id)
        log.info("run %s archived (%s)", run.id, run.status.value)

    async def execute_and_archive(run: Run) -> None:
        try:
            await asyncio.to_thread(controller.execute, run)
        finally:
            await archive(run)

    # -------------------- Endpoints --------------------

    @app.get("/health")
    async def health():
        return {"ok": True, "workflow": workflow.name}

    @app.post("/events", response_model=EventResponse, status_code=202)
    async def receive_event(req: EventRequest, background_tasks: BackgroundTasks):
        event = Event(kind=req.kind or "", ref=req.ref, metadata=req.metadata)
        decision = controller.evaluate(event)
        if not decision.accepted:
            return JSONResponse(
                status_code=200,
                content=EventResponse(accepted=False, reason=decision.reason).model_dump(),
            )

        run = controller.create_run(event)
        if run is None:
            raise HTTPException(status_code=409, detail="event rejected")

        async with SessionLocal() as s:
            async with s.begin():
                s.add(RunRecord(id=run.id, workflow=workflow.name, event=event.kind, ref=event.ref, status=run.status.value))

        background_tasks.add_task(execute_and_archive, run)
        return EventResponse(accepted=True, reason=decision.reason, run_id=run.id)

    @app.get("/runs/{run_id}", response_model=RunReport)
    async def get_run(run_id: str):
        live = controller.runs.get(run_id)
        if live is not None:
            return run_report(live)

        async with SessionLocal() as s:
            record = await s.get(RunRecord, run_id)
            if record is None:
                raise HTTPException(status_code=404, detail="Run not found")
            if record.report:
                return RunReport.model_validate(record.report)
            return RunReport(id=record.id, workflow=record.workflow, status=record.status, event=record.event, ref=record.ref)

    @app.get("/runs/{run_id}/jobs", response_model=list[JobReport])
    async def get_run_jobs(run_id: str):
        live = controller.runs.get(run_id)
        if live is not None:
            return run_report(live).jobs

        async with SessionLocal() as s:
            if await s.get(RunRecord, run_id) is None:
                raise HTTPException(status_code=404, detail="Run not found")
            rows = (await s.execute(
                sa.select(JobRecord).where(JobRecord.run_id == run_id).order_by(JobRecord.id)
            )).scalars().all()
            return [JobReport(name=r.name, status=r.status, reason=r.reason, steps=r.steps) for r in rows]

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    async def cancel_run(run_id: str):
        live = controller.runs.get(run_id)
        if live is None:
            async with SessionLocal() as s:
                if await s.get(RunRecord, run_id) is None:
                    raise HTTPException(status_code=404, detail="Run not found")
            raise HTTPException(status_code=409, detail="Run already finished")
        if not controller.cancel(run_id):
            raise HTTPException(status_code=409, detail=f"Run already {live.status.value}")
        return CancelResponse(run_id=run_id, cancelled=True)

    return app
