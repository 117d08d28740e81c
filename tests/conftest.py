"""Shared fixtures and in-process fakes for the triage test suite."""

import json

import pytest

from triage_backend.config.config import Settings
from triage_backend.database.storage import InMemoryStorage
from triage_backend.services.chat_state_machine import ChatStateMachine
from triage_backend.services.fact_extractor import FactExtractor
from triage_backend.services.handoff_service import HandoffAssembler
from triage_backend.services.llm_client import GenerationError
from triage_backend.services.red_flag_evaluator import RedFlagEvaluator
from triage_backend.services.retrieval import KeywordRetriever
from triage_backend.services.rules_engine import RulesEngine
from triage_backend.services.triage_service import TriageService


class ScriptedGenerator:
    """
    Deterministic stand-in for the text generation client.

    ``extraction`` and ``handoff`` are returned for JSON-mode calls (chosen
    by system prompt), ``text`` for free-text phrasing calls.
    """

    def __init__(self, extraction=None, handoff=None, text="Could you tell me a little more?"):
        self.extraction = extraction
        self.handoff = handoff
        self.text = text
        self.calls = []

    async def generate(self, system_prompt, messages, max_tokens, temperature, json_mode=False):
        self.calls.append({
            "system_prompt": system_prompt,
            "messages": list(messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
            "json_mode": json_mode,
        })
        if not json_mode:
            return self.text
        payload = self.extraction if "extract structured facts" in system_prompt else self.handoff
        if payload is None:
            raise GenerationError("No scripted response")
        return payload if isinstance(payload, str) else json.dumps(payload)


class FailingGenerator:
    """Generator whose every call fails."""

    def __init__(self):
        self.call_count = 0

    async def generate(self, system_prompt, messages, max_tokens, temperature, json_mode=False):
        self.call_count += 1
        raise GenerationError("Service unavailable")


class StaticRetriever:
    """Retriever returning fixed guidance."""

    def __init__(self, context="", chunks=None, fail=False):
        self.context = context
        self.chunks = chunks or []
        self.fail = fail

    async def followup_context(self, state):
        if self.fail:
            raise RuntimeError("Retrieval backend down")
        return self.context

    async def retrieve_relevant_chunks(self, complaint, symptom_flags, red_flag_labels):
        if self.fail:
            raise RuntimeError("Retrieval backend down")
        return list(self.chunks)


@pytest.fixture
def settings():
    return Settings(_env_file=None, openai_api_key="", log_extraction_divergence=True)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def rules_engine():
    return RulesEngine()


def make_service(storage, settings, generator=None, retriever=None) -> TriageService:
    """Wire a service the way the application does, with injectable fakes."""
    rules_engine = RulesEngine()
    if retriever is None:
        retriever = KeywordRetriever(storage, settings)
    return TriageService(
        storage=storage,
        state_machine=ChatStateMachine(
            generator=generator, retriever=retriever, rules_engine=rules_engine, settings=settings
        ),
        fact_extractor=FactExtractor(generator=generator, settings=settings),
        red_flag_evaluator=RedFlagEvaluator(),
        handoff_assembler=HandoffAssembler(
            generator=generator, retriever=retriever, rules_engine=rules_engine, settings=settings
        ),
        rules_engine=rules_engine,
        settings=settings,
    )


@pytest.fixture
def service(storage, settings):
    return make_service(storage, settings)


# Headache conversation answered without any escalation, from opening to confirmation
HEADACHE_CONVERSATION = [
    "I have a headache",
    "front of my head",
    "yesterday",
    "about the same",
    "4",
    "no", "no", "no", "no", "no",          # danger checks
    "no", "no", "no", "no", "no",          # headache red flags
    "none",
    "none",
    "no",
    "yes",
    "yes",
    "no",
    "Alex Smith",
    "yes",
]
