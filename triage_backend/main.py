"""
Patient Intake Triage API

A guided symptom-intake chat for reception and clinicians.

This API provides:
- Stage-by-stage intake chat with emergency escalation
- Deterministic Red/Amber/Green risk banding
- Red-flag evaluation that separates "ruled out" from "never asked"
- Structured clinical handoff per completed session
- Structured form submissions, admin metrics and a guidance knowledge base
"""

import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from triage_backend.config.config import Settings, get_settings
from triage_backend.config.logging_config import configure_logging, get_logger, log_request_context
from triage_backend.database.storage import StorageError
from triage_backend.models.models import (
    ChatMessageRequest,
    ChatMessageResponse,
    DocumentUploadRequest,
    ErrorResponse,
    FinishRequest,
    FinishResponse,
    HealthResponse,
    HealthStatus,
    MetricsResponse,
    StartChatResponse,
    SubmitRequest,
    SummaryResponse,
)
from triage_backend.models.triage_models import HandoffDocument, KnowledgeDocument, Submission
from triage_backend.services.triage_service import (
    SessionInactiveError,
    SessionNotFoundError,
    TriageService,
    build_triage_service,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events with proper logging.
    """
    settings: Settings = app.state.settings

    # Startup
    logger.info(
        "Application starting",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
        config=settings.get_safe_config_dict(),
    )

    yield

    # Shutdown
    app.state.triage_service.close()
    logger.info("Application shutting down")


def get_triage_service(request: Request) -> TriageService:
    """Service instance bound to the running application."""
    return request.app.state.triage_service


def _error_response(request: Request, status_code: int, error: str, message: str, details: dict | None = None):
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            message=message,
            details=details,
            request_id=getattr(request.state, "request_id", None),
        ).model_dump(mode="json"),
    )


def create_app(settings: Settings | None = None, service: TriageService | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Optional settings override for testing.
        service: Optional service override for testing.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description=__doc__,
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.settings = settings
    app.state.triage_service = service or build_triage_service(settings)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing and context."""
        request_id = str(uuid4())
        request.state.request_id = request_id
        start_time = time.perf_counter()

        # Bind request context for all logs in this request
        log_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        processing_time = int((time.perf_counter() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-Ms"] = str(processing_time)

        logger.info(
            "Request completed",
            status_code=response.status_code,
            processing_time_ms=processing_time,
        )

        return response

    # Exception handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Reject malformed request bodies naming the first failing field."""
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        logger.info("Request validation failed", field=field, error_count=len(errors))
        return _error_response(
            request,
            400,
            "VALIDATION_ERROR",
            first.get("msg", "Invalid request"),
            details={"field": field},
        )

    @app.exception_handler(SessionNotFoundError)
    async def session_not_found_handler(request: Request, exc: SessionNotFoundError):
        return _error_response(request, 404, "SESSION_NOT_FOUND", str(exc))

    @app.exception_handler(SessionInactiveError)
    async def session_inactive_handler(request: Request, exc: SessionInactiveError):
        return _error_response(request, 400, "SESSION_INACTIVE", str(exc))

    @app.exception_handler(StorageError)
    async def storage_exception_handler(request: Request, exc: StorageError):
        logger.error("Storage failure", error=str(exc))
        return _error_response(request, 500, "STORAGE_ERROR", "A storage error occurred")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with structured response."""
        return _error_response(request, exc.status_code, f"HTTP_{exc.status_code}", exc.detail)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.exception("Unhandled exception", error=str(exc))
        return _error_response(request, 500, "INTERNAL_ERROR", "An unexpected error occurred")

    # Register routes
    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all API routes."""

    @app.get("/", tags=["Root"])
    async def root(request: Request):
        """Root endpoint with API information."""
        settings: Settings = request.app.state.settings
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "status": "operational",
            "docs": "/docs" if settings.debug else "disabled",
        }

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request) -> HealthResponse:
        """
        Health check endpoint for monitoring.

        Without a generation key the chat still works on fixed questions,
        so the service reports degraded rather than unhealthy.
        """
        settings: Settings = request.app.state.settings
        checks = {
            "api": True,
            "llm_configured": bool(settings.openai_api_key),
        }

        if all(checks.values()):
            status = HealthStatus.HEALTHY
        elif checks["api"]:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UNHEALTHY

        return HealthResponse(
            status=status,
            version=settings.app_version,
            environment=settings.environment,
            checks=checks,
        )

    # ------------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------------

    @app.post("/api/v1/chat/start", response_model=StartChatResponse, tags=["Chat"])
    async def start_chat(service: TriageService = Depends(get_triage_service)) -> StartChatResponse:
        """Start an intake session. The first message is the opening question."""
        session = await service.start_session()
        return StartChatResponse(session_id=session.id, stage=session.stage, messages=session.messages)

    @app.post("/api/v1/chat/message", response_model=ChatMessageResponse, tags=["Chat"])
    async def chat_message(
        request: ChatMessageRequest,
        service: TriageService = Depends(get_triage_service),
    ) -> ChatMessageResponse:
        """
        Send one patient message.

        When the reply ends the conversation (completion or emergency
        escalation) the session is submitted and ``submission_id`` and
        ``risk_band`` are set.
        """
        session, result = await service.process_message(request.session_id, request.message)

        risk_band = None
        if session.submission_id:
            submission = await service.get_submission(session.submission_id)
            risk_band = submission.risk_band if submission else None

        return ChatMessageResponse(
            session_id=session.id,
            messages=session.messages,
            state=session.state,
            stage=session.stage,
            status=session.status,
            is_complete=result.is_complete,
            is_escalation=result.is_escalation,
            submission_id=session.submission_id,
            risk_band=risk_band,
        )

    @app.post("/api/v1/chat/finish", response_model=FinishResponse, tags=["Chat"])
    async def finish_chat(
        request: FinishRequest,
        service: TriageService = Depends(get_triage_service),
    ) -> FinishResponse:
        """Submit a session. Repeated calls return the stored outcome."""
        return await service.finish_session(request.session_id)

    # ------------------------------------------------------------------------
    # Triage
    # ------------------------------------------------------------------------

    @app.get("/api/v1/triage/session/{session_id}/handoff", response_model=HandoffDocument, tags=["Triage"])
    async def session_handoff(
        session_id: str,
        service: TriageService = Depends(get_triage_service),
    ) -> HandoffDocument:
        return await service.get_handoff(session_id)

    @app.get("/api/v1/triage/session/{session_id}/summary", response_model=SummaryResponse, tags=["Triage"])
    async def session_summary(
        session_id: str,
        service: TriageService = Depends(get_triage_service),
    ) -> SummaryResponse:
        summary = await service.get_summary(session_id)
        return SummaryResponse(session_id=session_id, summary=summary)

    @app.post("/api/v1/triage/submit", response_model=Submission, status_code=201, tags=["Triage"])
    async def submit_triage(
        request: SubmitRequest,
        service: TriageService = Depends(get_triage_service),
    ) -> Submission:
        """Classify a structured form submission with the rules engine."""
        return await service.submit_answers(request.answers)

    # ------------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------------

    @app.get("/api/v1/submissions", response_model=list[Submission], tags=["Submissions"])
    async def list_submissions(service: TriageService = Depends(get_triage_service)) -> list[Submission]:
        """All submissions, newest first."""
        return await service.list_submissions()

    @app.get("/api/v1/submissions/{submission_id}", response_model=Submission, tags=["Submissions"])
    async def get_submission(
        submission_id: str,
        service: TriageService = Depends(get_triage_service),
    ) -> Submission:
        submission = await service.get_submission(submission_id)
        if not submission:
            raise HTTPException(status_code=404, detail="Submission not found")
        return submission

    # ------------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------------

    @app.get("/api/v1/admin/metrics", response_model=MetricsResponse, tags=["Admin"])
    async def admin_metrics(service: TriageService = Depends(get_triage_service)) -> MetricsResponse:
        return await service.get_metrics()

    @app.get("/api/v1/documents", response_model=list[KnowledgeDocument], tags=["Documents"])
    async def list_documents(service: TriageService = Depends(get_triage_service)) -> list[KnowledgeDocument]:
        return await service.list_documents()

    @app.post("/api/v1/documents", response_model=KnowledgeDocument, status_code=201, tags=["Documents"])
    async def upload_document(
        request: DocumentUploadRequest,
        service: TriageService = Depends(get_triage_service),
    ) -> KnowledgeDocument:
        """Add a plain-text guidance document; blank lines separate chunks."""
        return await service.ingest_document(request.name, request.text, request.source)


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "triage_backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
