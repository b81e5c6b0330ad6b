import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, PositiveInt

import ledgerbench.constants as C
from ledgerbench.config import Settings, apply_overrides
from ledgerbench.errors import SetupFailure
from ledgerbench.harness import BenchmarkRun
from ledgerbench.ledger import open_backend
from ledgerbench.ledger.base import Ledger
from ledgerbench.models import Sender
from ledgerbench.report import LogSink, ResultSink
from ledgerbench.ws import HeadTracker

log = logging.getLogger("ledgerbench.app")

BackendFactory = Callable[[Settings], Awaitable[tuple[Ledger, list[Sender]]]]


async def default_backend(settings: Settings) -> tuple[Ledger, list[Sender]]:
    return await open_backend(settings.ledger, settings.raw.get("senders", {}))


class RunReq(BaseModel):
    strategy: C.Strategy | None = None
    target_count: int | None = Field(default=None, ge=0)
    duration: float | None = Field(default=None, ge=0)
    batch_size: PositiveInt | None = None
    batch_pause: float | None = Field(default=None, ge=0)
    poll_interval: float | None = Field(default=None, gt=0)
    poll_timeout: float | None = Field(default=None, gt=0)
    completion_fraction: float | None = Field(default=None, gt=0, le=1)

    def overrides(self) -> dict:
        return {
            "run": {
                "strategy": self.strategy,
                "target_count": self.target_count,
                "duration": self.duration,
                "batch": {"size": self.batch_size, "pause": self.batch_pause},
            },
            "poller": {
                "interval": self.poll_interval,
                "timeout": self.poll_timeout,
                "completion_fraction": self.completion_fraction,
            },
        }


class RunResp(BaseModel):
    run_id: str
    status: str


@dataclass
class RunEntry:
    run_id: str
    settings: Settings
    status: str = "pending"
    started_at: float = field(default_factory=time.time)
    harness: BenchmarkRun | None = None
    task: asyncio.Task | None = None
    report: dict | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "phase": self.harness.phase if self.harness else None,
            "strategy": str(self.settings.run.strategy),
            "target_count": self.settings.run.count,
            "started_at": self.started_at,
            "error": self.error,
            "report": self.report,
        }


def _prune(overrides: dict) -> dict:
    out = {}
    for k, v in overrides.items():
        if isinstance(v, dict):
            v = _prune(v)
            if v:
                out[k] = v
        elif v is not None:
            out[k] = v
    return out


async def _execute(entry: RunEntry, backend: BackendFactory, sink: ResultSink) -> None:
    entry.status = "running"
    ledger = None
    try:
        ledger, senders = await backend(entry.settings)
        heads = None
        if entry.settings.ledger.ws_url:
            heads = HeadTracker(entry.settings.ledger.ws_url, entry.settings.ledger.backend)
        entry.harness = BenchmarkRun(ledger, senders, entry.settings, sink=sink, heads=heads, run_id=entry.run_id)
        report = await entry.harness.execute()
        entry.report = report.to_dict()
        entry.status = "completed"
    except SetupFailure as e:
        entry.status = "failed"
        entry.error = f"setup failure: {e}"
    except asyncio.CancelledError:
        entry.status = "cancelled"
        raise
    except Exception as e:
        log.exception("Run %s crashed", entry.run_id)
        entry.status = "failed"
        entry.error = f"{e.__class__.__name__}: {e}"
    finally:
        if ledger is not None:
            await ledger.aclose()


def create_app(
    settings: Settings,
    *,
    backend: BackendFactory = default_backend,
    sink: ResultSink | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings
        app.state.runs = {}
        app.state.active = None
        log.info("Control API ready (backend %s, %s)", settings.ledger.backend, settings.ledger.rpc_url)
        try:
            yield
        finally:
            entry: RunEntry | None = app.state.active
            if entry is not None and entry.task is not None and not entry.task.done():
                log.info("Cancelling active run %s", entry.run_id)
                entry.task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await entry.task
            log.info("Shutdown complete")

    app = FastAPI(
        title="Ledger Benchmark",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Runs", "description": "Start benchmark runs and fetch their reports"},
            {"name": "State", "description": "Live state of the active run"},
        ],
    )
    result_sink = sink or LogSink()

    r_runs = APIRouter(prefix="/runs", tags=["Runs"])
    r_state = APIRouter(prefix="/state", tags=["State"])

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @r_runs.post("", response_model=RunResp, status_code=202)
    async def start_run(req: RunReq, request: Request):
        state = request.app.state
        active: RunEntry | None = state.active
        if active is not None and active.task is not None and not active.task.done():
            raise HTTPException(status_code=409, detail=f"Run {active.run_id} already running")

        cfg = apply_overrides(state.settings.raw, _prune(req.overrides()))
        try:
            run_settings = Settings.from_config(cfg)
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=422, detail=f"Invalid run configuration: {e}") from e

        entry = RunEntry(run_id=uuid.uuid4().hex[:12], settings=run_settings)
        entry.task = asyncio.create_task(_execute(entry, backend, result_sink), name=f"run_{entry.run_id}")
        state.runs[entry.run_id] = entry
        state.active = entry
        log.info("Started run %s (%s, %s requests)", entry.run_id, run_settings.run.strategy, run_settings.run.count or "unbounded")
        return RunResp(run_id=entry.run_id, status=entry.status)

    @r_runs.get("")
    def list_runs(request: Request):
        return [{"run_id": e.run_id, "status": e.status} for e in request.app.state.runs.values()]

    @r_runs.get("/{run_id}")
    def get_run(run_id: str, request: Request):
        entry = request.app.state.runs.get(run_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="run not found")
        return entry.to_dict()

    @r_state.get("/summary")
    def state_summary(request: Request):
        entry: RunEntry | None = request.app.state.active
        if entry is None:
            return {"active": None}
        out = {"active": entry.run_id, "status": entry.status, "phase": None, "submissions": None}
        if entry.harness is not None:
            out["phase"] = entry.harness.phase
            out["submissions"] = entry.harness.tracker.snapshot_stats()
            out["sequences"] = entry.harness.allocator.snapshot()
        return out

    app.include_router(r_runs)
    app.include_router(r_state)
    return app
