"""
Session orchestration for the intake chat.

Ties the dialogue state machine to storage and, when a conversation ends,
runs fact reconciliation, red-flag evaluation and handoff assembly before
storing the submission. Turns for one session are serialized; different
sessions proceed independently.
"""

import asyncio
import weakref
from datetime import datetime

from triage_backend.config.config import Settings, get_settings
from triage_backend.config.logging_config import get_logger
from triage_backend.database.storage import Storage, create_storage, new_id
from triage_backend.models.models import (
    ChatCompletionMetrics,
    FinishResponse,
    HallucinationProxyMetrics,
    MetricsResponse,
)
from triage_backend.models.triage_models import (
    ChatMessage,
    ChatSession,
    DocumentChunk,
    ExtractionResult,
    HandoffDocument,
    KnowledgeDocument,
    SessionStatus,
    Submission,
    TriageAnswers,
    TriageResult,
    TurnResult,
)
from triage_backend.services.chat_state_machine import OPENING_QUESTION, ChatStateMachine
from triage_backend.services.fact_extractor import FactExtractor
from triage_backend.services.handoff_service import HandoffAssembler
from triage_backend.services.llm_client import LLMClient
from triage_backend.services.red_flag_evaluator import RedFlagEvaluator, get_red_flag_evaluator
from triage_backend.services.retrieval import KeywordRetriever, split_into_chunks
from triage_backend.services.rules_engine import RulesEngine, get_rules_engine

logger = get_logger(__name__)

SUMMARY_NOT_AVAILABLE = "Summary not available"


class SessionNotFoundError(Exception):
    """No session with the given id."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionInactiveError(Exception):
    """A message was sent to a session that has already ended."""

    def __init__(self, session_id: str, status: SessionStatus):
        super().__init__(f"Session {session_id} is {status.value}")
        self.session_id = session_id
        self.status = status


def _status_for(result: TurnResult) -> SessionStatus:
    if result.is_escalation:
        return SessionStatus.ESCALATED
    if result.is_complete:
        return SessionStatus.COMPLETED
    return SessionStatus.ACTIVE


def _percentage(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole > 0 else 0


class TriageService:
    """
    Async operations behind the HTTP API.

    All collaborators are injected so tests can swap in fakes.
    """

    def __init__(
        self,
        storage: Storage,
        state_machine: ChatStateMachine,
        fact_extractor: FactExtractor,
        red_flag_evaluator: RedFlagEvaluator,
        handoff_assembler: HandoffAssembler,
        rules_engine: RulesEngine | None = None,
        settings: Settings | None = None,
    ):
        self.storage = storage
        self.state_machine = state_machine
        self.fact_extractor = fact_extractor
        self.red_flag_evaluator = red_flag_evaluator
        self.handoff_assembler = handoff_assembler
        self.rules_engine = rules_engine or get_rules_engine()
        self.settings = settings or get_settings()
        # A lock lives only while a turn for its session holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ========================================================================
    # Chat
    # ========================================================================

    async def start_session(self) -> ChatSession:
        """Create an active session holding the opening question."""
        session = ChatSession(
            id=new_id(),
            messages=[ChatMessage(role="assistant", content=OPENING_QUESTION)],
        )
        await self.storage.create_session(session)
        logger.info("Chat session started", session_id=session.id)
        return session

    async def process_message(self, session_id: str, text: str) -> tuple[ChatSession, TurnResult]:
        """
        Run one turn and persist it. Terminal turns are submitted.

        Raises:
            SessionNotFoundError: Unknown session.
            SessionInactiveError: Session already completed or escalated.
            StorageError: Persistence failed.
        """
        await self._load(session_id)
        async with self._session_lock(session_id):
            session = await self._load(session_id)
            if session.status != SessionStatus.ACTIVE:
                raise SessionInactiveError(session_id, session.status)

            history = list(session.messages)
            result = await self.state_machine.advance(
                text, history, session.state, session.stage, session.retry_count
            )

            session.messages = [
                *history,
                ChatMessage(role="user", content=text),
                ChatMessage(role="assistant", content=result.response),
            ]
            session.state = result.state
            session.stage = result.stage
            session.retry_count = result.retry_count
            session.status = _status_for(result)
            session.updated_at = datetime.utcnow()
            await self.storage.save_session(session)

            logger.info(
                "Turn processed",
                session_id=session_id,
                stage=result.stage.value,
                status=session.status.value,
                retry_count=result.retry_count,
            )

            if result.is_complete:
                session, _, _ = await self._finalize(session)

        return session, result

    async def finish_session(self, session_id: str) -> FinishResponse:
        """
        Submit a session explicitly.

        Returns the stored outcome when the session was already submitted.
        """
        await self._load(session_id)
        async with self._session_lock(session_id):
            session = await self._load(session_id)

            if session.submission_id and session.handoff is not None:
                submission = await self.storage.get_submission(session.submission_id)
                if submission is not None:
                    triage = self.rules_engine.evaluate_state(session.state)
                    return FinishResponse(
                        submission_id=submission.id,
                        risk_band=submission.risk_band,
                        red_flags=submission.red_flags,
                        summary=submission.summary,
                        recommendations=triage.recommendations,
                        handoff=session.handoff,
                    )

            if session.status == SessionStatus.ACTIVE:
                session.status = SessionStatus.COMPLETED
            session, submission, triage = await self._finalize(session)

        return FinishResponse(
            submission_id=submission.id,
            risk_band=submission.risk_band,
            red_flags=submission.red_flags,
            summary=submission.summary,
            recommendations=triage.recommendations,
            handoff=session.handoff,
        )

    async def _finalize(self, session: ChatSession) -> tuple[ChatSession, Submission, TriageResult]:
        """Reconcile facts, evaluate, assemble the handoff and store the submission."""
        state = session.state
        triage = self.rules_engine.evaluate_state(state)
        handoff = await self._build_handoff(session)

        case_number = await self.storage.count_submissions() + 1
        patient_name = state.patient_name or "Patient"
        patient_age = state.age or 0

        submission = Submission(
            id=new_id(),
            age=patient_age,
            sex=state.sex or "Unknown",
            complaint=state.complaint or state.opening_description or "Unknown",
            answers={**state.model_dump(mode="json", exclude_none=True), "patient_name": patient_name},
            risk_band=triage.risk_band,
            red_flags=triage.red_flags,
            summary=handoff.summary_for_reception
            or f"Case #{case_number} - {patient_name} (Age {patient_age}): {triage.summary}",
            rules_version=self.settings.rules_version,
            model_version=self.settings.model_version,
            session_id=session.id,
        )
        await self.storage.create_submission(submission)

        session.submission_id = submission.id
        session.handoff = handoff
        session.summary_text = handoff.summary_for_reception
        session.rules_severity = handoff.severity.rules_engine_category
        session.ai_severity = handoff.severity.ai_suggested_category
        session.ai_confidence = handoff.severity.ai_confidence
        session.updated_at = datetime.utcnow()
        await self.storage.save_session(session)

        logger.info(
            "Session submitted",
            session_id=session.id,
            submission_id=submission.id,
            risk_band=triage.risk_band.value,
            flag_count=len(triage.red_flags),
        )
        return session, submission, triage

    async def _build_handoff(self, session: ChatSession) -> HandoffDocument:
        extraction = await self.fact_extractor.extract(session.messages, session.state, session_id=session.id)
        await self._record_divergences(extraction)
        evaluation = self.red_flag_evaluator.evaluate(extraction.record)
        return await self.handoff_assembler.assemble(
            session.id,
            session.state,
            session.messages,
            evaluation.triggered,
            evaluation.not_triggered,
            evaluation.not_assessed,
        )

    async def _record_divergences(self, extraction: ExtractionResult) -> None:
        for event in extraction.divergences:
            try:
                await self.storage.record_divergence(event)
            except Exception as e:
                logger.warning(
                    "Failed to record extraction divergence",
                    session_id=event.session_id,
                    key=event.fact_key,
                    error=str(e),
                )

    # ========================================================================
    # Handoff
    # ========================================================================

    async def get_handoff(self, session_id: str) -> HandoffDocument:
        """Cached handoff, or a freshly assembled one which is then cached."""
        await self._load(session_id)
        async with self._session_lock(session_id):
            session = await self._load(session_id)
            if session.handoff is not None:
                return session.handoff

            handoff = await self._build_handoff(session)
            session.handoff = handoff
            session.summary_text = handoff.summary_for_reception
            session.updated_at = datetime.utcnow()
            await self.storage.save_session(session)
            logger.info("Handoff generated on demand", session_id=session_id)
            return handoff

    async def get_summary(self, session_id: str) -> str:
        session = await self._load(session_id)
        if session.summary_text:
            return session.summary_text
        if session.handoff is not None and session.handoff.summary_for_reception:
            return session.handoff.summary_for_reception
        return SUMMARY_NOT_AVAILABLE

    # ========================================================================
    # Submissions
    # ========================================================================

    async def submit_answers(self, answers: TriageAnswers) -> Submission:
        """Classify a structured form submission and store it."""
        triage = self.rules_engine.evaluate(answers)
        submission = Submission(
            id=new_id(),
            age=answers.age,
            sex=answers.sex,
            complaint=answers.complaint,
            answers=answers.model_dump(mode="json", exclude_none=True),
            risk_band=triage.risk_band,
            red_flags=triage.red_flags,
            summary=triage.summary,
            rules_version=self.settings.rules_version,
            model_version=self.settings.model_version,
        )
        await self.storage.create_submission(submission)
        logger.info(
            "Structured submission stored",
            submission_id=submission.id,
            risk_band=triage.risk_band.value,
        )
        return submission

    async def list_submissions(self) -> list[Submission]:
        return await self.storage.list_submissions()

    async def get_submission(self, submission_id: str) -> Submission | None:
        return await self.storage.get_submission(submission_id)

    # ========================================================================
    # Metrics
    # ========================================================================

    async def get_metrics(self) -> MetricsResponse:
        """Completion and hallucination-proxy rates, as whole percentages."""
        counts = await self.storage.session_counts()
        divergence_count, divergent_sessions = await self.storage.divergence_metrics()
        completed = counts[SessionStatus.COMPLETED.value]

        return MetricsResponse(
            chat_completion=ChatCompletionMetrics(
                total_sessions=counts["total"],
                completed=completed,
                active=counts[SessionStatus.ACTIVE.value],
                escalated=counts[SessionStatus.ESCALATED.value],
                completion_rate_percentage=_percentage(completed, counts["total"]),
            ),
            hallucination_proxy=HallucinationProxyMetrics(
                extraction_divergence_count=divergence_count,
                sessions_with_at_least_one_divergence=divergent_sessions,
                hallucination_rate_percentage=_percentage(divergent_sessions, completed),
            ),
        )

    # ========================================================================
    # Knowledge base
    # ========================================================================

    async def ingest_document(self, name: str, text: str, source: str = "Upload") -> KnowledgeDocument:
        """Chunk a guidance document on blank lines and store it."""
        document_id = new_id()
        chunks = [
            DocumentChunk(id=new_id(), document_id=document_id, source_title=name, chunk_text=chunk)
            for chunk in split_into_chunks(text)
        ]
        document = KnowledgeDocument(id=document_id, name=name, source=source, chunk_count=len(chunks))
        await self.storage.create_document(document, chunks)
        logger.info("Document ingested", document_id=document_id, name=name, chunk_count=len(chunks))
        return document

    async def list_documents(self) -> list[KnowledgeDocument]:
        return await self.storage.list_documents()

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _load(self, session_id: str) -> ChatSession:
        session = await self.storage.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def close(self) -> None:
        self.storage.close()


def build_triage_service(settings: Settings | None = None, storage: Storage | None = None) -> TriageService:
    """
    Wire the service with the configured storage and generation client.

    Args:
        settings: Application settings.
        storage: Optional storage override; defaults to the configured backend.
    """
    settings = settings or get_settings()
    storage = storage or create_storage(settings)
    generator = LLMClient(settings)
    retriever = KeywordRetriever(storage, settings)
    rules_engine = get_rules_engine()

    return TriageService(
        storage=storage,
        state_machine=ChatStateMachine(
            generator=generator, retriever=retriever, rules_engine=rules_engine, settings=settings
        ),
        fact_extractor=FactExtractor(generator=generator, settings=settings),
        red_flag_evaluator=get_red_flag_evaluator(),
        handoff_assembler=HandoffAssembler(
            generator=generator, retriever=retriever, rules_engine=rules_engine, settings=settings
        ),
        rules_engine=rules_engine,
        settings=settings,
    )
