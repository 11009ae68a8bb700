"""
GA4 REST API Endpoints.

This module provides the HTTP surface of the query pipeline:
- POST /ga4/query: answer one natural language question
- GET /ga4/activity: recent activity records
- GET /healthz: liveness check
"""

from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from ga4ai.analytics.errors import (
    AllCandidatesFailed,
    AnalyticsError,
    ExtractionFailed,
    RefinementExhausted,
    TransportUnavailable,
)
from ga4ai.analytics.orchestrator import AnalyticsOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["ga4"])

ERROR_STATUS = (
    (ExtractionFailed, 422),
    (TransportUnavailable, 503),
    (AllCandidatesFailed, 502),
    (RefinementExhausted, 502),
)


class QueryRequest(BaseModel):
    """GA4 question."""

    prompt: str = Field(..., min_length=1, description="Natural language question")
    property_id: Optional[str] = Field(
        None, description="Preferred GA4 property when the question names none"
    )


class QueryResponseModel(BaseModel):
    """Answer to a GA4 question."""

    status: str = Field(..., description="ok, partial, empty or error")
    summary_text: str = Field(..., description="Markdown summary")
    structured_data: dict[str, Any] = Field(default_factory=dict)
    trace_id: Optional[str] = Field(None, description="Trace ID for debugging")


def status_for(error: AnalyticsError) -> int:
    for kind, status in ERROR_STATUS:
        if isinstance(error, kind):
            return status
    return 500


def get_orchestrator(request: Request) -> AnalyticsOrchestrator:
    """The process-wide orchestrator, created on first use."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = AnalyticsOrchestrator()
        request.app.state.orchestrator = orchestrator
    return orchestrator


@router.post("/ga4/query", response_model=QueryResponseModel)
async def query_ga4(
    request: QueryRequest,
    x_caller_id: Optional[str] = Header(None, alias="X-Caller-Id"),
    orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator),
) -> QueryResponseModel:
    """
    Answer a GA4 question.

    Errors are mapped to status codes: unreadable questions to 422, an
    unreachable analytics tool to 503 and rejected reports to 502. The
    body's ``detail`` carries the error type and a user-facing message.
    """
    caller_id = x_caller_id or "anonymous"
    logger.info("ga4_query_received", prompt=request.prompt, caller_id=caller_id)

    try:
        response = await orchestrator.process_query(
            request.prompt, caller_id, default_target_id=request.property_id
        )
    except AnalyticsError as e:
        status = status_for(e)
        logger.warning(
            "ga4_query_failed",
            prompt=request.prompt,
            error=str(e),
            status=status,
        )
        raise HTTPException(
            status_code=status,
            detail={"error": type(e).__name__, "message": e.user_message},
        )

    return QueryResponseModel(**response.to_dict())


@router.get("/ga4/activity")
async def recent_activity(
    limit: int = Query(100, ge=1, le=10000),
    caller: Optional[str] = Query(None),
    orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator),
) -> dict:
    records = orchestrator.activity.recent(caller=caller, limit=limit)
    return {
        "records": [r.model_dump(mode="json") for r in records],
        "stats": orchestrator.activity.stats(),
    }


@router.get("/healthz", response_class=PlainTextResponse)
async def healthz() -> str:
    return "OK"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if (orchestrator := getattr(app.state, "orchestrator", None)) is not None:
        await orchestrator.close()


def create_app(orchestrator: Optional[AnalyticsOrchestrator] = None) -> FastAPI:
    app = FastAPI(title="ga4ai", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.include_router(router)
    return app


__all__ = ["router", "create_app", "get_orchestrator"]
