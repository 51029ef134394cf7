"""
Ops API: record registration, inspection, the manual-review queue and on-demand ticks.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from util.logging import audit_event, logger

from ..core import heartbeat
from ..core.config import VERSION, debug_enabled, get_reconcile_interval, is_reconcile_enabled
from ..core.dao import StakeStore
from ..core.db import health_check
from ..core.errors import (
    DuplicateKeyError,
    InvalidTransitionError,
    RecordNotFoundError,
    StoreUnavailableError,
)
from ..core.reconciler import Reconciler
from ..core.schema import StakeRecord, StakeStatus
from .schemas import (
    HealthResponse,
    ReconcileStatusResponse,
    StakeCorrectionRequest,
    StakeCreateRequest,
    StakeDetailResponse,
    StakeEventResponse,
    StakeListResponse,
    StakeResolveRequest,
    StakeResponse,
    TickReportResponse,
)

RECONCILE_TASK = "reconcile"

_store: Optional[StakeStore] = None
_reconciler: Optional[Reconciler] = None


def get_store() -> StakeStore:
    global _store
    if _store is None:
        _store = StakeStore()
    return _store


def get_reconciler() -> Reconciler:
    global _reconciler
    if _reconciler is None:
        _reconciler = Reconciler.from_config(store=get_store())
    return _reconciler


@asynccontextmanager
async def lifespan(app: FastAPI):
    if is_reconcile_enabled():
        reconciler = get_reconciler()
        heartbeat.register_task(RECONCILE_TASK, get_reconcile_interval(), reconciler.run_tick)
        heartbeat.start_in_background()
    yield
    if heartbeat.running:
        heartbeat.stop()


app = FastAPI(
    title="pay2ping reconciler",
    version=VERSION,
    description="Stake reconciliation service: attendance check and escrow release",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan,
)

# Ops dashboard runs on a separate local port
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _to_response(record: StakeRecord) -> StakeResponse:
    return StakeResponse(**record.to_dict())


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(store: StakeStore = Depends(get_store)):
    """Check system health."""
    db_health = health_check(store.db_path)
    try:
        counts = store.count_by_status() if db_health else {}
    except StoreUnavailableError:
        db_health, counts = False, {}

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        stake_counts=counts,
        heartbeat=heartbeat.get_status()["status"],
    )


@app.post("/stakes", response_model=StakeResponse, status_code=201)
def create_stake(req: StakeCreateRequest, store: StakeStore = Depends(get_store)):
    """Register a stake for a scheduled meeting. This is the only way records enter the store."""
    record = StakeRecord(
        escrow_id=req.escrow_id,
        initializer_id=req.initializer_id,
        beneficiary_id=req.beneficiary_id,
        vault_id=req.vault_id,
        stake_amount=req.stake_amount,
        attendee_contact=req.attendee_contact,
        meeting_id=req.meeting_id,
        meeting_end_time=req.meeting_end_time.isoformat(),
    )
    try:
        created = store.append(record)
    except DuplicateKeyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _to_response(created)


@app.get("/stakes", response_model=StakeListResponse)
def list_stakes(status: Optional[str] = None, limit: int = 100, store: StakeStore = Depends(get_store)):
    if status is not None and status not in {s.value for s in StakeStatus}:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    records = store.list_records(status=status, limit=min(max(limit, 1), 1000))
    return StakeListResponse(items=[_to_response(r) for r in records], count=len(records))


# Define /stakes/review BEFORE /stakes/{escrow_id} to avoid path parameter conflict
@app.get("/stakes/review", response_model=StakeListResponse)
def review_queue(store: StakeStore = Depends(get_store)):
    """Records the reconciler has parked for an operator."""
    records = store.needs_review()
    return StakeListResponse(items=[_to_response(r) for r in records], count=len(records))


@app.get("/stakes/{escrow_id}", response_model=StakeDetailResponse)
def get_stake(escrow_id: str, store: StakeStore = Depends(get_store)):
    record = store.get(escrow_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Stake not found")

    history = [
        StakeEventResponse(from_status=e.from_status, to_status=e.to_status,
                           confirmation_ref=e.confirmation_ref, detail=e.detail, ts=e.ts)
        for e in store.history(escrow_id)
    ]
    return StakeDetailResponse(stake=_to_response(record), history=history)


@app.patch("/stakes/{escrow_id}", response_model=StakeResponse)
def correct_stake(escrow_id: str, req: StakeCorrectionRequest, store: StakeStore = Depends(get_store)):
    """Fix recipient, vault or amount on a record parked for review."""
    fields = req.fields()
    try:
        record = store.correct_record(escrow_id, **fields)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Stake not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    audit_event("stake.corrected", {"escrow_id": escrow_id}, payload=fields)
    return _to_response(record)


@app.post("/stakes/{escrow_id}/requeue", response_model=StakeResponse)
def requeue_stake(escrow_id: str, store: StakeStore = Depends(get_store)):
    """Hand a reviewed record back to the reconciler."""
    try:
        record = store.requeue(escrow_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Stake not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    audit_event("stake.requeued", {"escrow_id": escrow_id})
    return _to_response(record)


@app.post("/stakes/{escrow_id}/resolve", response_model=StakeResponse)
def resolve_stake(escrow_id: str, req: StakeResolveRequest, store: StakeStore = Depends(get_store)):
    """Close an ambiguous release once the ledger shows where the funds went."""
    try:
        record = store.resolve(escrow_id, req.status, req.confirmation_ref)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Stake not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    audit_event("stake.resolved", {"escrow_id": escrow_id},
                payload={"status": req.status, "confirmation_ref": req.confirmation_ref})
    return _to_response(record)


@app.get("/reconcile/status", response_model=ReconcileStatusResponse)
def reconcile_status(reconciler: Reconciler = Depends(get_reconciler)):
    report = reconciler.last_report.to_dict() if reconciler.last_report else None
    return ReconcileStatusResponse(heartbeat=heartbeat.get_status(), last_report=report)


@app.post("/reconcile/run", response_model=TickReportResponse)
def run_reconcile_now(reconciler: Reconciler = Depends(get_reconciler)):
    """Run one tick immediately. Debug mode only."""
    if not debug_enabled():
        raise HTTPException(status_code=403, detail="Manual ticks require debug mode")

    task_info = heartbeat.tasks.get(RECONCILE_TASK)
    try:
        if task_info is not None:
            # go through the heartbeat so a manual tick never overlaps a scheduled one
            if not heartbeat.run_task(RECONCILE_TASK, task_info):
                raise HTTPException(status_code=409, detail="A reconciliation tick is already running")
            report = reconciler.last_report
        else:
            report = reconciler.run_tick()
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return TickReportResponse(**report.to_dict())


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request, exc):
    """The database is unreachable; callers should retry later."""
    logger.error(f"Stake store unavailable during {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Stake store unavailable"})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    content = {"detail": "Internal server error"}
    if debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(status_code=500, content=content)
