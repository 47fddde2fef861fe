"""API routes for the customs portal submission engine."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request

from customs_portal.api.models import (
    CancelResponse,
    PreviewRequest,
    RetryRequest,
    SubmissionRequest,
    TargetSummary,
)
from customs_portal.core.models import SubmissionRecord
from customs_portal.mapping.planner import MappingPreview
from customs_portal.service import ConnectionTestResult, SubmissionService
from customs_portal.utils.logging import get_logger

logger = get_logger(__name__)

submissions_router = APIRouter(prefix="/submissions", tags=["submissions"])
targets_router = APIRouter(prefix="/targets", tags=["targets"])


def get_service(request: Request) -> SubmissionService:
    """Resolve the submission service created at application startup."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Submission service not initialized")
    return service


@submissions_router.post("", response_model=SubmissionRecord, status_code=202)
async def create_submission(request: SubmissionRequest, service: SubmissionService = Depends(get_service)):
    """Start a submission; returns the pending record unless ``wait`` is set."""
    logger.info(
        "Submission requested",
        target=request.target_code,
        declaration_id=request.declaration.declaration_id,
        wait=request.wait,
    )
    if request.wait:
        return await service.submit(request.target_code, request.declaration)
    return await service.start_submission(request.target_code, request.declaration)


@submissions_router.get("/{submission_id}", response_model=SubmissionRecord)
async def get_submission(submission_id: UUID, service: SubmissionService = Depends(get_service)):
    record = await service.get_record(submission_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Submission {submission_id} not found")
    return record


@submissions_router.post("/{submission_id}/cancel", response_model=CancelResponse)
async def cancel_submission(
    submission_id: UUID,
    reason: Optional[str] = None,
    service: SubmissionService = Depends(get_service),
):
    """Signal a running submission to stop at its next state boundary."""
    if await service.get_record(submission_id) is None:
        raise HTTPException(status_code=404, detail=f"Submission {submission_id} not found")
    cancelled = await service.cancel(submission_id, reason)
    return CancelResponse(submission_id=str(submission_id), cancelled=cancelled)


@submissions_router.post("/{submission_id}/retry", response_model=SubmissionRecord, status_code=202)
async def retry_submission(
    submission_id: UUID,
    request: RetryRequest,
    service: SubmissionService = Depends(get_service),
):
    """Retry a failed submission as a new linked record."""
    return await service.retry(submission_id, request.declaration, background=not request.wait)


@targets_router.get("", response_model=List[TargetSummary])
async def list_targets(service: SubmissionService = Depends(get_service)):
    return [
        TargetSummary(
            code=target.code,
            name=target.name,
            base_url=target.base_url,
            auth_mode=target.auth_mode.value,
            is_active=target.is_active,
            allow_ai_assist=target.allow_ai_assist,
            pages=[page.name for page in sorted(target.pages, key=lambda p: p.sequence_order)],
            last_tested_at=target.last_tested_at,
        )
        for target in service.store.list()
    ]


@targets_router.post("/{code}/test-connection", response_model=ConnectionTestResult)
async def run_connection_test(code: str, service: SubmissionService = Depends(get_service)):
    """Log in to the portal without submitting anything."""
    return await service.test_connection(code)


@targets_router.post("/{code}/preview", response_model=MappingPreview)
async def preview_mapping(code: str, request: PreviewRequest, service: SubmissionService = Depends(get_service)):
    """Show the values a submission would type, without opening a browser."""
    return service.preview(code, request.declaration)


all_routers = [submissions_router, targets_router]
