"""
Text generation client.

Thin wrapper over the OpenAI SDK used by every generation call site
(question phrasing, follow-up questions, fact extraction, handoff
narrative). Callers treat every failure as recoverable and fall back to
deterministic text, so this client raises a single ``GenerationError``
for transport errors, timeouts, empty output and unparseable JSON.
"""

import asyncio
import json
import re
from typing import Any

from openai import AsyncOpenAI, OpenAIError

from triage_backend.config.config import Settings, get_settings
from triage_backend.config.logging_config import get_logger
from triage_backend.models.triage_models import ChatMessage

logger = get_logger(__name__)


class GenerationError(Exception):
    """The text generation collaborator failed or returned unusable output."""


def parse_json_object(content: str) -> dict[str, Any] | None:
    """
    Parse a JSON object from model output.

    Strips markdown code fences and, if the whole payload does not parse,
    falls back to the outermost ``{...}`` span.
    """
    content = re.sub(r"```json\s*", "", content)
    content = re.sub(r"```\s*", "", content)
    content = content.strip()

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", content, re.DOTALL)
        if not match:
            return None
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None

    return parsed if isinstance(parsed, dict) else None


class LLMClient:
    """
    Async generation client over any OpenAI-compatible endpoint.

    The underlying SDK client is created lazily so the service can be
    constructed without credentials in tests.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._client: AsyncOpenAI | None = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.settings.openai_api_key:
                logger.warning("OpenAI API key not configured, generation calls will fail")
            self._client = AsyncOpenAI(
                api_key=self.settings.openai_api_key or "dummy",
                base_url=self.settings.openai_base_url,
            )
        return self._client

    async def generate(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
        json_mode: bool = False,
    ) -> str:
        """
        Run one chat completion and return the text content.

        Args:
            system_prompt: System instruction placed first.
            messages: Conversation turns passed through in order.
            max_tokens: Output token budget.
            temperature: Sampling temperature.
            json_mode: Request a JSON object and verify the output parses.

        Raises:
            GenerationError: On transport failure, timeout, empty output,
                or non-JSON output in JSON mode.
        """
        payload = [{"role": "system", "content": system_prompt}]
        payload.extend({"role": m.role, "content": m.content} for m in messages)

        kwargs: dict[str, Any] = {
            "model": self.settings.llm_model,
            "messages": payload,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(**kwargs),
                timeout=self.settings.llm_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise GenerationError(
                f"Generation timed out after {self.settings.llm_timeout_seconds}s"
            ) from e
        except OpenAIError as e:
            raise GenerationError(f"Generation request failed: {e}") from e

        content = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not content:
            raise GenerationError("Empty response from LLM")

        if json_mode and parse_json_object(content) is None:
            raise GenerationError("LLM returned non-JSON output in JSON mode")

        logger.debug(
            "Generation complete",
            model=self.settings.llm_model,
            json_mode=json_mode,
            output_length=len(content),
        )
        return content

