"""
HTTP surface for the decision core: evaluate, ledger and event reads,
the review queue, ops controls and assurance artifacts.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .schemas import (
    AssuranceCreateRequest,
    AssuranceRevokeRequest,
    ErrorResponse,
    EvaluateResponse,
    EventRequest,
    GuardrailResetRequest,
    HealthResponse,
    PaymentUpdateRequest,
    ReviewUpdateRequest,
)
from ..core import assurance, event_log, heartbeat, ledger, reviews
from ..core.config import LOGIC_VERSION, VERSION, debug_enabled
from ..core.db import health_check, init_db
from ..core.errors import OrchestrationError, ValidationError
from ..core.guardrails import guardrails
from ..core.health import health_monitor
from ..core.review_triggers import resolve_review, run_review_triggers
from ..util.logging import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.log_operation("api.startup", "ready", {"version": VERSION, "logic_version": LOGIC_VERSION})
    yield


# Initialize the FastAPI application
app = FastAPI(
    title="Verdict Decision API",
    version=VERSION,
    description="Decision orchestration core with policy gating, guardrails and an append-only ledger",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_orchestrator = None


def get_orchestrator():
    """Lazy initialization of the decision orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        from ..agents.orchestrator import DecisionOrchestrator
        _orchestrator = DecisionOrchestrator()
    return _orchestrator


def _error_response(status_code: int, error: str, detail: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, details=details or None)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint():
    """Check system health."""
    db_health = health_check()

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        logic_version=LOGIC_VERSION,
    )


@app.post("/evaluate", response_model=EvaluateResponse)
def evaluate_endpoint(payload: Dict[str, Any] = Body(...), orchestrator=Depends(get_orchestrator)):
    """Run one input envelope through the decision pipeline."""
    response = orchestrator.evaluate_payload(payload)
    if response.metadata.deferred:
        return JSONResponse(status_code=202, content=response.model_dump(mode="json"))
    return response


# /decisions/review is declared before /decisions/{decision_id} to avoid a path parameter clash
@app.get("/decisions/review")
def list_decisions_needing_review(limit: int = 50):
    return [record.to_dict() for record in ledger.list_needing_review(limit)]


@app.get("/decisions/{decision_id}")
def get_decision_endpoint(decision_id: str):
    return ledger.require_decision(decision_id).to_dict()


@app.get("/decisions")
def list_decisions_endpoint(traveler_id: str, limit: int = 20):
    return [record.to_dict() for record in ledger.list_by_traveler(traveler_id, limit)]


@app.post("/events", status_code=201)
def append_event_endpoint(request: EventRequest):
    event = event_log.log_event(
        request.event_type,
        request.session_id,
        traveler_id=request.traveler_id,
        lead_id=request.lead_id,
        decision_id=request.decision_id,
        payload=request.payload,
    )
    return event.to_dict()


@app.get("/events")
def list_events_endpoint(traveler_id: Optional[str] = None, event_type: Optional[str] = None,
                         session_id: Optional[str] = None, limit: int = 100):
    """Events filtered by traveler, type or session (exactly one)."""
    if traveler_id:
        events = event_log.list_by_traveler(traveler_id, limit)
    elif event_type:
        events = event_log.list_by_type(event_type, limit)
    elif session_id:
        events = event_log.list_by_session(session_id)
    else:
        raise ValidationError("One of traveler_id, event_type or session_id is required")
    return [event.to_dict() for event in events]


@app.get("/reviews/pending")
def list_pending_reviews_endpoint(limit: int = 50):
    return [review.to_dict() for review in reviews.list_pending_reviews(limit)]


@app.get("/reviews")
def list_reviews_endpoint(topic_id: str, limit: int = 50):
    return [review.to_dict() for review in reviews.list_reviews_by_topic(topic_id, limit)]


@app.patch("/reviews/{review_id}")
def update_review_endpoint(review_id: str, request: ReviewUpdateRequest):
    review = resolve_review(review_id, request.status, request.reviewer_id, request.resolution_notes)
    return review.to_dict()


@app.post("/reviews/run")
def run_reviews_endpoint(topic_id: Optional[str] = None):
    """Run the review triggers now, for one topic or all of them."""
    created = run_review_triggers(topic_id)
    return {"created": len(created), "reviews": [review.to_dict() for review in created]}


@app.get("/ops/health")
def ops_health_endpoint(orchestrator=Depends(get_orchestrator)):
    """Windowed health signals, guardrail state and provider reachability."""
    pending = reviews.count_pending_reviews()
    return {
        "health": health_monitor.status(pending),
        "guardrails": guardrails.summary(pending),
        "heartbeat": heartbeat.get_status(),
        "inference_available": orchestrator.inference_client.check_health(),
    }


@app.post("/ops/guardrails/reset")
def reset_guardrails_endpoint(request: GuardrailResetRequest):
    if request.target == "inference":
        guardrails.reset_inference_circuit()
    elif request.target == "artifact":
        guardrails.reset_artifact_circuit()
    else:
        guardrails.reset_all()
    return {"target": request.target, "guardrails": guardrails.summary(reviews.count_pending_reviews())}


@app.post("/assurance", status_code=201)
def create_assurance_endpoint(request: AssuranceCreateRequest):
    record = assurance.generate_assurance(request.decision_id, request.session_id, request.traveler_id)
    return {
        "assurance_id": record.assurance_id,
        "decision_id": record.decision_id,
        "status": record.status,
        "payment_status": record.payment_status,
        "amount_cents": record.amount_cents,
        "currency": record.currency,
    }


@app.get("/assurance/{assurance_id}")
def get_assurance_endpoint(assurance_id: str):
    return assurance.get_assurance(assurance_id).to_dict()


@app.post("/assurance/{assurance_id}/payment")
def record_payment_endpoint(assurance_id: str, request: PaymentUpdateRequest):
    return assurance.record_payment(assurance_id, request.payment_id).to_dict()


@app.post("/assurance/{assurance_id}/revoke")
def revoke_assurance_endpoint(assurance_id: str, request: AssuranceRevokeRequest):
    return assurance.revoke_assurance(assurance_id, request.reason).to_dict()


@app.exception_handler(OrchestrationError)
async def orchestration_exception_handler(request: Request, exc: OrchestrationError):
    """Map core errors to their status code and a bounded error envelope."""
    if exc.status_code >= 500:
        logger.error(f"{exc.error}: {exc.message}")
    return _error_response(exc.status_code, exc.error, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    field_errors: List[Dict[str, str]] = [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return _error_response(400, "validation_error", "Invalid request", {"field_errors": field_errors})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    details = {"debug": str(exc)} if debug_enabled() else None
    return _error_response(500, "internal_error", "Internal server error", details)
