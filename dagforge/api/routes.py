from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from structlog.contextvars import bound_contextvars

from ..core.logging import get_logger
from ..dependencies import get_engine
from ..orchestration.engine import TaskGraphEngine
from ..orchestration.enums import GraphStatus
from ..orchestration.errors import DecompositionError, GraphNotFoundError
from ..schemas.graphs import (
    DecompositionErrorResponse,
    GraphStatusResponse,
    ObjectiveRequest,
    ObjectiveResponse,
)

router = APIRouter()
logger = get_logger(name=__name__)


@router.post(
    "/objectives",
    response_model=ObjectiveResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": DecompositionErrorResponse}},
    tags=["objectives"],
)
async def submit_objective(
    payload: ObjectiveRequest,
    engine: TaskGraphEngine = Depends(get_engine),
) -> ObjectiveResponse | JSONResponse:
    try:
        graph_id = await engine.submit_objective(payload.objective, payload.context)
    except DecompositionError as exc:
        logger.info("objective_rejected", kind=exc.kind.value, reason=exc.message)
        body = DecompositionErrorResponse(kind=exc.kind.value, message=exc.message)
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body.model_dump())
    return ObjectiveResponse(graph_id=graph_id, status=GraphStatus.PENDING.value)


@router.get("/graphs/{graph_id}", response_model=GraphStatusResponse, tags=["graphs"])
async def get_graph_status(
    graph_id: str,
    engine: TaskGraphEngine = Depends(get_engine),
) -> GraphStatusResponse:
    with bound_contextvars(graph_id=graph_id):
        try:
            report = await engine.get_graph_status(graph_id)
        except GraphNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Graph not found") from exc
    return GraphStatusResponse.from_report(report)


@router.post("/graphs/{graph_id}/cancel", response_model=GraphStatusResponse, tags=["graphs"])
async def cancel_graph(
    graph_id: str,
    engine: TaskGraphEngine = Depends(get_engine),
) -> GraphStatusResponse:
    with bound_contextvars(graph_id=graph_id):
        try:
            report = await engine.cancel_graph(graph_id)
        except GraphNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Graph not found") from exc
        logger.info("graph_cancel_requested_via_api", status=report.status.value)
    return GraphStatusResponse.from_report(report)
