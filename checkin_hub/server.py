import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, HTTPException, WebSocket, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.requests import Request

from .auth import (
    LoginRequest,
    check_login_rate_limit,
    issue_token,
    require_student,
    secrets_match,
)
from .checkins import CheckInService, public_intervention
from .connection_registry import ConnectionRegistry
from .dispatcher import EventDispatcher
from .progress import build_remedial_tasks
from .progress_store import ProgressStore, InterventionStateError, NOT_FOUND
from .review_scheduler import (
    DEFAULT_REVIEW_DELAY,
    DEFAULT_WEBHOOK_TIMEOUT,
    SOURCE_MANUAL,
    SOURCE_WEBHOOK,
    DecisionOutcome,
    DelegatedReviewPolicy,
    ReviewScheduler,
    SimulatedReviewPolicy,
)
from .ws_constants import REVIEW_MODE_SIMULATION
from .ws_handler import websocket_checkin

logger = logging.getLogger(__name__)

app = FastAPI()

# --- Configuration ---

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("CHECKIN_DATA_DIR", str(BASE_DIR / "data")))

SIMULATION_MODE = os.environ.get("CHECKIN_SIMULATION_MODE", "false").lower() == "true"
REVIEW_DELAY_SECONDS = float(os.environ.get("CHECKIN_REVIEW_DELAY", str(DEFAULT_REVIEW_DELAY)))
WEBHOOK_URL = os.environ.get("CHECKIN_WEBHOOK_URL") or None
WEBHOOK_TIMEOUT = float(os.environ.get("CHECKIN_WEBHOOK_TIMEOUT", str(DEFAULT_WEBHOOK_TIMEOUT)))
# Shared secret the decision service (and operators) must send as X-Webhook-Secret
WEBHOOK_SECRET = os.environ.get("CHECKIN_WEBHOOK_SECRET") or None


# --- CORS Configuration ---

def _get_cors_origins() -> list[str]:
    """Get CORS origins from environment variable or use default."""
    cors_origins_str = os.environ.get("CHECKIN_CORS_ORIGINS", "http://localhost:8080")
    origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    return origins if origins else ["http://localhost:8080"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Components ---

def _build_review_policy() -> SimulatedReviewPolicy | DelegatedReviewPolicy:
    if SIMULATION_MODE:
        return SimulatedReviewPolicy(REVIEW_DELAY_SECONDS)
    return DelegatedReviewPolicy(WEBHOOK_URL, timeout=WEBHOOK_TIMEOUT)


registry = ConnectionRegistry()
store = ProgressStore(DATA_DIR / "progress.json")
dispatcher = EventDispatcher(registry)
review_scheduler = ReviewScheduler(store, dispatcher, _build_review_policy())
checkin_service = CheckInService(store, review_scheduler)


@app.on_event("startup")
async def startup_event():
    await store.load()
    if review_scheduler.mode == REVIEW_MODE_SIMULATION:
        logger.info(
            "Simulation mode: interventions are auto-approved after %.1fs",
            REVIEW_DELAY_SECONDS,
        )
    else:
        logger.info("Delegated mode: reviews are sent to %s", WEBHOOK_URL or "<unset>")


@app.on_event("shutdown")
async def shutdown_event():
    await review_scheduler.stop()


# --- API Routes ---

@app.post("/api/auth")
async def api_auth(req: LoginRequest, request: Request):
    client_ip = request.client.host if request.client else "unknown"
    check_login_rate_limit(client_ip)

    student = await store.get_student(req.student_id)
    if student is None:
        if not req.name:
            raise HTTPException(status_code=400, detail="Name required for new student")
        student = await store.create_student(req.student_id, req.name)

    token = issue_token(req.student_id)
    return {"token": token, "studentId": req.student_id, "name": student["name"]}


@app.get("/api/health")
async def api_health():
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        store_ok = await store.ping()
    except OSError:
        logger.exception("Store health check failed")
        store_ok = False
    if not store_ok:
        return JSONResponse(
            status_code=503,
            content={"status": "error", "timestamp": timestamp, "store": "unavailable"},
        )
    return {
        "status": "ok",
        "timestamp": timestamp,
        "store": "ok",
        "mode": review_scheduler.mode,
        "connections": await registry.count(),
    }


@app.get("/api/students/{student_id}/pending-interventions")
async def api_pending_interventions(student_id: str, caller: str = Depends(require_student)):
    if caller != student_id:
        raise HTTPException(status_code=403, detail="Cannot read another student's interventions")
    pending = await checkin_service.pending_interventions(student_id)
    return {
        "studentId": student_id,
        "pendingInterventions": [public_intervention(r) for r in pending],
    }


# --- Review decisions (decision-service webhook and operator recovery) ---

async def require_webhook_secret(x_webhook_secret: str | None = Header(None)):
    """Dependency that checks the shared secret when one is configured."""
    if WEBHOOK_SECRET is None:
        return
    if not secrets_match(x_webhook_secret, WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Unauthorized")


class ApprovalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(..., alias="studentId", min_length=1, max_length=100)
    intervention_id: int = Field(..., alias="interventionId")
    assigned_tasks: str = Field(..., alias="assignedTasks", min_length=1, max_length=5000)
    approved: bool = True


class ManualApprovalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    assigned_tasks: str | None = Field(None, alias="assignedTasks", min_length=1, max_length=5000)


async def _apply_decision(
    student_id: str, intervention_id: int, assigned_tasks: str, *, source: str,
) -> DecisionOutcome:
    try:
        return await review_scheduler.apply_decision(
            student_id, intervention_id, assigned_tasks, source=source,
        )
    except InterventionStateError as e:
        status = 404 if e.code == NOT_FOUND else 409
        raise HTTPException(status_code=status, detail=e.message)


def _decision_response(intervention_id: int, outcome: DecisionOutcome) -> dict:
    if outcome.delivered:
        message = "Intervention assigned and student notified"
    else:
        message = "Intervention assigned but student is offline"
    return {
        "success": True,
        "message": message,
        "delivered": outcome.delivered,
        "offline": not outcome.delivered,
        "interventionId": intervention_id,
    }


@app.post("/api/interventions/approve", dependencies=[Depends(require_webhook_secret)])
async def api_approve_intervention(req: ApprovalRequest):
    if not req.approved:
        logger.info("Decision service declined intervention %s", req.intervention_id)
        return {"success": True, "approved": False, "interventionId": req.intervention_id}
    outcome = await _apply_decision(
        req.student_id, req.intervention_id, req.assigned_tasks, source=SOURCE_WEBHOOK,
    )
    return _decision_response(req.intervention_id, outcome)


@app.post(
    "/api/interventions/{intervention_id}/manual-approve",
    dependencies=[Depends(require_webhook_secret)],
)
async def api_manual_approve(intervention_id: int, req: ManualApprovalRequest | None = None):
    record = await store.get_intervention(intervention_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Intervention not found")

    assigned_tasks = req.assigned_tasks if req else None
    if not assigned_tasks:
        checkin = await store.get_checkin(record["checkin_id"])
        if checkin is None:
            raise HTTPException(status_code=422, detail="assignedTasks is required")
        assigned_tasks = build_remedial_tasks(checkin["quiz_score"], checkin["focus_minutes"])

    logger.info("Manual approval requested for intervention %s", intervention_id)
    outcome = await _apply_decision(
        record["student_id"], intervention_id, assigned_tasks, source=SOURCE_MANUAL,
    )
    return _decision_response(intervention_id, outcome)


# --- WebSocket ---

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket_checkin(
        websocket,
        registry=registry,
        checkin_service=checkin_service,
        review_mode=review_scheduler.mode,
    )
