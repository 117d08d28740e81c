"""
Pydantic models for the HTTP API.

Request bodies are validated here, at the boundary, so malformed input
is rejected with a field-level message and never reaches triage logic.
Domain types live in ``triage_models``.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from triage_backend.models.triage_models import (
    ChatMessage,
    ChatState,
    HandoffDocument,
    RiskBand,
    SessionStatus,
    Stage,
    TriageAnswers,
)


class HealthStatus(str, Enum):
    """System health status values."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ============================================================================
# Chat
# ============================================================================

class StartChatResponse(BaseModel):
    """A new intake session with its opening question."""
    session_id: str = Field(..., description="Session identifier")
    stage: Stage = Field(..., description="Current stage")
    messages: list[ChatMessage] = Field(..., description="Conversation so far")


class ChatMessageRequest(BaseModel):
    """
    One patient message.

    Attributes:
        session_id: Session to continue.
        message: Patient text for this turn.
    """
    session_id: str = Field(..., min_length=1, description="Session identifier")
    message: str = Field(
        ...,
        min_length=1,
        max_length=4000,
        description="Patient message",
        examples=["I've had chest pain since this morning"],
    )


class ChatMessageResponse(BaseModel):
    """Session after one turn."""
    session_id: str
    messages: list[ChatMessage]
    state: ChatState
    stage: Stage
    status: SessionStatus
    is_complete: bool = False
    is_escalation: bool = False
    submission_id: str | None = Field(default=None, description="Set once the session is submitted")
    risk_band: RiskBand | None = Field(default=None, description="Set once the session is submitted")


class FinishRequest(BaseModel):
    session_id: str = Field(..., min_length=1, description="Session identifier")


class FinishResponse(BaseModel):
    """
    Outcome of finishing a session.

    Attributes:
        submission_id: Stored submission.
        risk_band: Rules-engine band.
        red_flags: Rules-engine flags.
        summary: Reception summary.
        recommendations: Self-care advice (Green only).
        handoff: Clinical handoff document.
    """
    submission_id: str
    risk_band: RiskBand
    red_flags: list[str] = Field(default_factory=list)
    summary: str
    recommendations: list[str] = Field(default_factory=list)
    handoff: HandoffDocument


class SummaryResponse(BaseModel):
    session_id: str
    summary: str


# ============================================================================
# Structured submission
# ============================================================================

class SubmitRequest(BaseModel):
    """Structured (form) triage submission."""
    answers: TriageAnswers = Field(..., description="Flat fact record for the rules engine")


# ============================================================================
# Metrics
# ============================================================================

class ChatCompletionMetrics(BaseModel):
    total_sessions: int
    completed: int
    active: int
    escalated: int
    completion_rate_percentage: int


class HallucinationProxyMetrics(BaseModel):
    extraction_divergence_count: int
    sessions_with_at_least_one_divergence: int
    hallucination_rate_percentage: int
    note: str = (
        "Hallucination proxy = % of completed sessions where model-extracted "
        "fact(s) disagreed with the dialogue state."
    )


class MetricsResponse(BaseModel):
    """Chat completion and extraction divergence metrics."""
    chat_completion: ChatCompletionMetrics
    hallucination_proxy: HallucinationProxyMetrics


# ============================================================================
# Knowledge base
# ============================================================================

class DocumentUploadRequest(BaseModel):
    """Plain-text guidance document to add to the knowledge base."""
    name: str = Field(..., min_length=1, max_length=200, description="Document name")
    text: str = Field(..., min_length=1, description="Document text; chunks are separated by blank lines")
    source: str = Field(default="Upload", max_length=200, description="Document source")


# ============================================================================
# Service
# ============================================================================

class HealthResponse(BaseModel):
    """
    Health check response for monitoring.

    Attributes:
        status: Overall system health status.
        version: Application version.
        environment: Deployment environment.
        checks: Individual component health checks.
    """
    status: HealthStatus = Field(..., description="Overall health status")
    version: str = Field(..., description="Application version")
    environment: str = Field(..., description="Deployment environment")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Check timestamp")
    checks: dict[str, bool] = Field(default_factory=dict, description="Component health checks")


class ErrorResponse(BaseModel):
    """
    Standardized error response.

    Attributes:
        error: Error type/code.
        message: Human-readable error message.
        details: Additional error details.
        request_id: Request ID for tracing.
    """
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: dict | None = Field(default=None, description="Additional details")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")
