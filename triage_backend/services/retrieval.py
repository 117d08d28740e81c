"""
Keyword-overlap retrieval over the guidance knowledge base.

No embeddings: a chunk's score is the number of distinct search keywords
(lowercase word tokens longer than three characters) it contains.
"""

import re

from triage_backend.config.config import Settings, get_settings
from triage_backend.config.logging_config import get_logger
from triage_backend.database.storage import Storage
from triage_backend.models.triage_models import ChatState, RetrievedChunk

logger = get_logger(__name__)

MIN_KEYWORD_LENGTH = 4


def split_into_chunks(text: str) -> list[str]:
    """Split a document on blank lines, dropping empty chunks."""
    return [chunk.strip() for chunk in re.split(r"\n\s*\n", text) if chunk.strip()]


def extract_keywords(text: str) -> list[str]:
    """Distinct lowercase word tokens longer than three characters, in order."""
    seen: dict[str, None] = {}
    for token in re.findall(r"[a-z0-9]+", text.lower()):
        if len(token) >= MIN_KEYWORD_LENGTH:
            seen.setdefault(token, None)
    return list(seen)


class KeywordRetriever:
    """Read-only retrieval over stored document chunks."""

    def __init__(self, storage: Storage, settings: Settings | None = None):
        self.storage = storage
        self.settings = settings or get_settings()

    async def retrieve_relevant_chunks(
        self,
        complaint: str,
        symptom_flags: dict[str, bool],
        red_flag_labels: list[str],
    ) -> list[RetrievedChunk]:
        """
        Rank chunks against the complaint, positive symptoms and red flags.

        Args:
            complaint: Presenting complaint.
            symptom_flags: Boolean answers; only ``True`` names are searched.
            red_flag_labels: Labels of triggered red flags.

        Returns:
            Up to ``retrieval_top_k`` chunks with a positive score, best first.
        """
        search_terms = " ".join([
            complaint,
            *(name for name, value in symptom_flags.items() if value is True),
            *red_flag_labels,
        ])
        keywords = extract_keywords(search_terms)
        if not keywords:
            return []

        chunks = await self.storage.list_chunks()
        scored = []
        for chunk in chunks:
            text = chunk.chunk_text.lower()
            score = sum(1 for keyword in keywords if keyword in text)
            if score > 0:
                scored.append((score, chunk))

        # Stable sort keeps insertion order among equal scores
        scored.sort(key=lambda item: item[0], reverse=True)
        results = [
            RetrievedChunk(
                chunk_id=chunk.id,
                source_title=chunk.source_title,
                content=chunk.chunk_text,
                score=score,
            )
            for score, chunk in scored[: self.settings.retrieval_top_k]
        ]

        logger.debug("Chunks retrieved", keyword_count=len(keywords), result_count=len(results))
        return results

    async def followup_context(self, state: ChatState) -> str:
        """
        Guidance text used to write follow-up questions.

        Returns the first ``followup_context_chunks`` chunks containing any
        keyword from the complaint, location or opening description, joined
        by blank lines. Empty means no relevant guidance.
        """
        search_terms = " ".join(
            part for part in (state.complaint, state.location, state.opening_description) if part
        )
        keywords = extract_keywords(search_terms)
        if not keywords:
            return ""

        matched = []
        for chunk in await self.storage.list_chunks():
            text = chunk.chunk_text.lower()
            if any(keyword in text for keyword in keywords):
                matched.append(chunk.chunk_text)
                if len(matched) >= self.settings.followup_context_chunks:
                    break

        return "\n\n".join(matched)
