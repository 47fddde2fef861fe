"""API models for request/response schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from customs_portal.core.models import DeclarationBundle


class SubmissionRequest(BaseModel):
    """Request to submit one declaration to one target."""
    target_code: str = Field(..., description="Target code")
    declaration: DeclarationBundle = Field(..., description="Declaration data bundle")
    wait: bool = Field(False, description="Wait for the outcome instead of running in the background")


class RetryRequest(BaseModel):
    """Request to retry a failed submission."""
    declaration: DeclarationBundle = Field(..., description="Declaration data bundle to resubmit")
    wait: bool = Field(False, description="Wait for the outcome instead of running in the background")


class PreviewRequest(BaseModel):
    """Request to preview the mapping of a declaration."""
    declaration: DeclarationBundle = Field(..., description="Declaration data bundle")


class CancelResponse(BaseModel):
    """Result of a cancellation request."""
    submission_id: str = Field(..., description="Submission identifier")
    cancelled: bool = Field(..., description="Whether a running submission was signalled")


class TargetSummary(BaseModel):
    """Summary of one configured target."""
    code: str = Field(..., description="Target code")
    name: str = Field(..., description="Display name")
    base_url: str = Field(..., description="Portal base URL")
    auth_mode: str = Field(..., description="Authentication mode")
    is_active: bool = Field(..., description="Whether the target accepts submissions")
    allow_ai_assist: bool = Field(..., description="Whether AI-assisted recovery is permitted")
    pages: List[str] = Field(default_factory=list, description="Page names in sequence order")
    last_tested_at: Optional[datetime] = Field(None, description="Last successful connection test")


class HealthCheck(BaseModel):
    """Health check response."""
    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(..., description="Check timestamp")
    version: str = Field(..., description="Service version")
    components: Dict[str, str] = Field(..., description="Component status")


class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(..., description="Error timestamp")
