"""
Persistence for chat sessions, submissions, divergence events and the
guidance knowledge base.

Two backends share one async interface:

- InMemoryStorage: process-local dictionaries (development and tests)
- ArangoStorage: ArangoDB collections via python-arango

Backend failures surface as ``StorageError``; turn processing has no
local recovery for storage loss.
"""

from abc import ABC, abstractmethod
from typing import Any
from uuid import uuid4

from arango import ArangoClient
from arango.database import StandardDatabase
from arango.exceptions import ArangoError

from triage_backend.config.config import Settings, get_settings
from triage_backend.config.logging_config import get_logger
from triage_backend.models.triage_models import (
    ChatSession,
    DivergenceEvent,
    DocumentChunk,
    KnowledgeDocument,
    SessionStatus,
    Submission,
)

logger = get_logger(__name__)


class StorageError(Exception):
    """A persistence operation failed."""


def new_id() -> str:
    return uuid4().hex


class Storage(ABC):
    """Async storage interface used by the triage service."""

    # Sessions
    @abstractmethod
    async def create_session(self, session: ChatSession) -> ChatSession: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> ChatSession | None: ...

    @abstractmethod
    async def save_session(self, session: ChatSession) -> ChatSession: ...

    @abstractmethod
    async def session_counts(self) -> dict[str, int]:
        """Counts keyed by ``total`` and each session status value."""

    # Submissions
    @abstractmethod
    async def create_submission(self, submission: Submission) -> Submission: ...

    @abstractmethod
    async def get_submission(self, submission_id: str) -> Submission | None: ...

    @abstractmethod
    async def list_submissions(self) -> list[Submission]: ...

    @abstractmethod
    async def count_submissions(self) -> int: ...

    # Divergence log
    @abstractmethod
    async def record_divergence(self, event: DivergenceEvent) -> None: ...

    @abstractmethod
    async def divergence_metrics(self) -> tuple[int, int]:
        """(total divergence events, distinct sessions with at least one)."""

    # Knowledge base
    @abstractmethod
    async def create_document(self, document: KnowledgeDocument, chunks: list[DocumentChunk]) -> KnowledgeDocument: ...

    @abstractmethod
    async def list_documents(self) -> list[KnowledgeDocument]: ...

    @abstractmethod
    async def list_chunks(self) -> list[DocumentChunk]: ...

    def close(self) -> None:
        """Release backend resources."""


# ============================================================================
# In-memory backend
# ============================================================================

class InMemoryStorage(Storage):
    """Dictionary-backed storage. Insertion order is preserved."""

    def __init__(self):
        self._sessions: dict[str, ChatSession] = {}
        self._submissions: dict[str, Submission] = {}
        self._divergences: list[DivergenceEvent] = []
        self._documents: dict[str, KnowledgeDocument] = {}
        self._chunks: list[DocumentChunk] = []

    async def create_session(self, session: ChatSession) -> ChatSession:
        self._sessions[session.id] = session.model_copy(deep=True)
        return session

    async def get_session(self, session_id: str) -> ChatSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def save_session(self, session: ChatSession) -> ChatSession:
        if session.id not in self._sessions:
            raise StorageError(f"Session {session.id} does not exist")
        self._sessions[session.id] = session.model_copy(deep=True)
        return session

    async def session_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in SessionStatus}
        for session in self._sessions.values():
            counts[session.status.value] += 1
        counts["total"] = len(self._sessions)
        return counts

    async def create_submission(self, submission: Submission) -> Submission:
        self._submissions[submission.id] = submission
        return submission

    async def get_submission(self, submission_id: str) -> Submission | None:
        return self._submissions.get(submission_id)

    async def list_submissions(self) -> list[Submission]:
        return sorted(self._submissions.values(), key=lambda s: s.created_at, reverse=True)

    async def count_submissions(self) -> int:
        return len(self._submissions)

    async def record_divergence(self, event: DivergenceEvent) -> None:
        self._divergences.append(event)

    async def divergence_metrics(self) -> tuple[int, int]:
        sessions = {e.session_id for e in self._divergences if e.session_id is not None}
        return len(self._divergences), len(sessions)

    async def create_document(self, document: KnowledgeDocument, chunks: list[DocumentChunk]) -> KnowledgeDocument:
        self._documents[document.id] = document
        self._chunks.extend(chunks)
        return document

    async def list_documents(self) -> list[KnowledgeDocument]:
        return list(self._documents.values())

    async def list_chunks(self) -> list[DocumentChunk]:
        return list(self._chunks)


# ============================================================================
# ArangoDB backend
# ============================================================================

SESSIONS = "chat_sessions"
SUBMISSIONS = "submissions"
DIVERGENCES = "extraction_divergences"
DOCUMENTS = "documents"
CHUNKS = "document_chunks"

_COLLECTIONS = (SESSIONS, SUBMISSIONS, DIVERGENCES, DOCUMENTS, CHUNKS)


def _to_document(model: Any, key: str | None = None) -> dict[str, Any]:
    document = model.model_dump(mode="json")
    if key is not None:
        document["_key"] = key
    return document


def _strip_meta(document: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in document.items() if not k.startswith("_")}


class ArangoStorage(Storage):
    """
    ArangoDB-backed storage.

    The database and collections are created on first use.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._client: ArangoClient | None = None
        self._db: StandardDatabase | None = None

    @property
    def db(self) -> StandardDatabase:
        if self._db is None:
            self._db = self._connect()
        return self._db

    def _connect(self) -> StandardDatabase:
        settings = self.settings
        try:
            self._client = ArangoClient(hosts=settings.arango_host)
            sys_db = self._client.db(
                "_system",
                username=settings.arango_username,
                password=settings.arango_password,
            )
            if not sys_db.has_database(settings.arango_database):
                sys_db.create_database(settings.arango_database)
                logger.info("Created database", database=settings.arango_database)

            db = self._client.db(
                settings.arango_database,
                username=settings.arango_username,
                password=settings.arango_password,
            )
            for name in _COLLECTIONS:
                if not db.has_collection(name):
                    db.create_collection(name)
                    logger.info("Created collection", collection=name)
        except ArangoError as e:
            logger.error("Failed to connect to ArangoDB", host=settings.arango_host, error=str(e))
            raise StorageError(f"Database unavailable: {e}") from e

        logger.info("Connected to database", host=settings.arango_host, database=settings.arango_database)
        return db

    def _query(self, aql: str, bind_vars: dict[str, Any] | None = None) -> list[Any]:
        try:
            cursor = self.db.aql.execute(aql, bind_vars=bind_vars or {})
            return list(cursor)
        except ArangoError as e:
            logger.error("Database query failed", error=str(e))
            raise StorageError(f"Query failed: {e}") from e

    def _insert(self, collection: str, document: dict[str, Any]) -> None:
        try:
            self.db.collection(collection).insert(document)
        except ArangoError as e:
            logger.error("Insert failed", collection=collection, error=str(e))
            raise StorageError(f"Insert into {collection} failed: {e}") from e
        logger.debug("Document inserted", collection=collection, key=document.get("_key"))

    def _get(self, collection: str, key: str) -> dict[str, Any] | None:
        try:
            return self.db.collection(collection).get(key)
        except ArangoError as e:
            logger.error("Read failed", collection=collection, key=key, error=str(e))
            raise StorageError(f"Read from {collection} failed: {e}") from e

    async def create_session(self, session: ChatSession) -> ChatSession:
        self._insert(SESSIONS, _to_document(session, key=session.id))
        return session

    async def get_session(self, session_id: str) -> ChatSession | None:
        document = self._get(SESSIONS, session_id)
        return ChatSession.model_validate(_strip_meta(document)) if document else None

    async def save_session(self, session: ChatSession) -> ChatSession:
        try:
            self.db.collection(SESSIONS).replace(_to_document(session, key=session.id))
        except ArangoError as e:
            logger.error("Session save failed", session_id=session.id, error=str(e))
            raise StorageError(f"Saving session {session.id} failed: {e}") from e
        return session

    async def session_counts(self) -> dict[str, int]:
        rows = self._query(
            f"FOR s IN {SESSIONS} COLLECT status = s.status WITH COUNT INTO n "
            "RETURN {status: status, n: n}"
        )
        counts = {status.value: 0 for status in SessionStatus}
        for row in rows:
            counts[row["status"]] = row["n"]
        counts["total"] = sum(row["n"] for row in rows)
        return counts

    async def create_submission(self, submission: Submission) -> Submission:
        self._insert(SUBMISSIONS, _to_document(submission, key=submission.id))
        return submission

    async def get_submission(self, submission_id: str) -> Submission | None:
        document = self._get(SUBMISSIONS, submission_id)
        return Submission.model_validate(_strip_meta(document)) if document else None

    async def list_submissions(self) -> list[Submission]:
        rows = self._query(f"FOR s IN {SUBMISSIONS} SORT s.created_at DESC RETURN s")
        return [Submission.model_validate(_strip_meta(row)) for row in rows]

    async def count_submissions(self) -> int:
        rows = self._query(f"RETURN LENGTH({SUBMISSIONS})")
        return rows[0] if rows else 0

    async def record_divergence(self, event: DivergenceEvent) -> None:
        self._insert(DIVERGENCES, _to_document(event))

    async def divergence_metrics(self) -> tuple[int, int]:
        rows = self._query(
            f"LET events = (FOR d IN {DIVERGENCES} RETURN d.session_id) "
            "RETURN {total: LENGTH(events), "
            "sessions: LENGTH(UNIQUE(events[* FILTER CURRENT != null]))}"
        )
        if not rows:
            return 0, 0
        return rows[0]["total"], rows[0]["sessions"]

    async def create_document(self, document: KnowledgeDocument, chunks: list[DocumentChunk]) -> KnowledgeDocument:
        self._insert(DOCUMENTS, _to_document(document, key=document.id))
        for chunk in chunks:
            self._insert(CHUNKS, _to_document(chunk, key=chunk.id))
        return document

    async def list_documents(self) -> list[KnowledgeDocument]:
        rows = self._query(f"FOR d IN {DOCUMENTS} SORT d.created_at RETURN d")
        return [KnowledgeDocument.model_validate(_strip_meta(row)) for row in rows]

    async def list_chunks(self) -> list[DocumentChunk]:
        rows = self._query(f"FOR c IN {CHUNKS} RETURN c")
        return [DocumentChunk.model_validate(_strip_meta(row)) for row in rows]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            self._db = None
            logger.info("Database connection closed")


def create_storage(settings: Settings | None = None) -> Storage:
    """Build the configured storage backend."""
    settings = settings or get_settings()
    if settings.storage_backend == "arango":
        return ArangoStorage(settings)
    return InMemoryStorage()
