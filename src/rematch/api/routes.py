from __future__ import annotations

from contextlib import aclosing

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect

from rematch.api.deps import get_service
from rematch.api.schemas import (
    IndexJobsRequest,
    IndexJobsResponse,
    RejectCandidateRequest,
    RejectCandidateResponse,
    WorkflowDetailResponse,
    WorkflowStatusResponse,
)
from rematch.core.service import MatchingService
from rematch.errors import NotFoundError, ValidationError

router = APIRouter(prefix="/api", tags=["api"])


@router.post("/candidates/reject", response_model=RejectCandidateResponse)
async def reject_candidate(
    payload: RejectCandidateRequest,
    service: MatchingService = Depends(get_service),
) -> RejectCandidateResponse:
    try:
        data = await service.reject_candidate(payload.candidate_id, payload.application_id, payload.reason)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RejectCandidateResponse.model_validate(data)


@router.get("/workflows/{execution_id}/status", response_model=WorkflowStatusResponse)
async def get_workflow_status(
    execution_id: str,
    service: MatchingService = Depends(get_service),
) -> WorkflowStatusResponse:
    try:
        view = await service.get_status(execution_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return WorkflowStatusResponse.model_validate(view.model_dump())


@router.get("/workflows/{execution_id}", response_model=WorkflowDetailResponse)
async def get_workflow(
    execution_id: str,
    service: MatchingService = Depends(get_service),
) -> WorkflowDetailResponse:
    try:
        data = await service.get_execution_detail(execution_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return WorkflowDetailResponse.model_validate(data)


@router.post("/jobs/index", response_model=IndexJobsResponse)
async def index_jobs(
    payload: IndexJobsRequest,
    service: MatchingService = Depends(get_service),
) -> IndexJobsResponse:
    try:
        data = await service.index_jobs(payload.company_id, payload.job_ids)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return IndexJobsResponse.model_validate(data)


@router.websocket("/workflows/{execution_id}/stream")
async def stream_workflow_events(
    websocket: WebSocket,
    execution_id: str,
    service: MatchingService = Depends(get_service),
) -> None:
    await websocket.accept()
    events = service.watch_status(execution_id)
    try:
        async with aclosing(events):
            async for event in events:
                await websocket.send_json(event)
    except NotFoundError as exc:
        await websocket.send_json({"type": "error", "execution_id": execution_id, "error": str(exc)})
    except WebSocketDisconnect:
        return
    await websocket.close()
