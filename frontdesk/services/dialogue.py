"""Dialogue completion: turn a chat history plus a step instruction into the
next assistant utterance.

The conversation engine never lets the model decide *what* happens; it only
asks for wording.  Field extraction (used when the engine cannot tell which
registration field a reply answers) goes through a cheaper model.
"""

from __future__ import annotations

import json
import logging
import re
import time

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage

from frontdesk.config import ANTHROPIC_API_KEY, EXTRACTION_MODEL_NAME, MODEL_NAME
from frontdesk.models import PATIENT_FIELDS, ChatTurn
from frontdesk.prompts import EXTRACTION_PROMPT, GREET, get_system_prompt
from frontdesk.services.metrics import metrics

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

# Extraction models sometimes answer in camelCase
_FIELD_ALIASES = {
    "firstName": "first_name",
    "lastName": "last_name",
    "dateOfBirth": "dob",
    "date_of_birth": "dob",
    "birthDate": "dob",
}

# Anthropic requires the first non-system message to come from the user
_CHAT_OPENED = "(The patient has opened the chat.)"


class DialogueStepFailed(Exception):
    """The dialogue completion service could not produce a reply."""


# ── LLM builders ────────────────────────────────────────────────────


def _build_llm() -> ChatAnthropic:
    """Build the LLM that writes the assistant's replies."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.7,
        max_tokens=300,
    )


def _build_extraction_llm() -> ChatAnthropic:
    """Build a small deterministic LLM for structured field extraction."""
    return ChatAnthropic(
        model=EXTRACTION_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=200,
    )


def _text(message: AnyMessage) -> str:
    """Flatten an AIMessage's content (string or content blocks) to text."""
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts = [
        block.get("text", "") if isinstance(block, dict) else str(block)
        for block in content
    ]
    return "".join(parts).strip()


class DialogueService:
    """Wording layer over the Anthropic chat model."""

    def __init__(self, llm=None, extraction_llm=None) -> None:
        self._llm = llm or _build_llm()
        self._extraction_llm = extraction_llm or _build_extraction_llm()

    def _messages(self, history: list[ChatTurn], instruction: str) -> list[AnyMessage]:
        messages: list[AnyMessage] = [SystemMessage(content=get_system_prompt(instruction))]
        if not history or history[0].role != "user":
            messages.append(HumanMessage(content=_CHAT_OPENED))
        for turn in history:
            if turn.role == "user":
                messages.append(HumanMessage(content=turn.content))
            else:
                messages.append(AIMessage(content=turn.content))
        return messages

    def complete(self, history: list[ChatTurn], instruction: str) -> str:
        """Return the next assistant utterance.

        Raises:
            DialogueStepFailed: if the model call fails or returns nothing.
        """
        t0 = time.perf_counter()
        try:
            response = self._llm.invoke(self._messages(history, instruction))
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "dialogue_complete",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.warning("Dialogue completion failed: %s", exc)
            raise DialogueStepFailed("The assistant could not respond") from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "dialogue_complete", latency_ms=elapsed)
        reply = _text(response)
        if not reply:
            raise DialogueStepFailed("The assistant returned an empty reply")
        logger.debug("Dialogue reply in %.0fms", elapsed)
        return reply

    def greet(self) -> str:
        return self.complete([], GREET)

    def extract_patient_fields(
        self,
        message: str,
        last_prompt: str,
        missing: list[str],
    ) -> dict[str, str]:
        """Best-effort extraction of registration fields from a free reply.

        Only fields in *missing* are returned.  Any failure (model error,
        unparsable JSON) is logged and yields ``{}``; the engine then simply
        asks again.
        """
        prompt = EXTRACTION_PROMPT.format(
            last_prompt=last_prompt,
            missing=", ".join(missing) or "none",
            message=message,
        )
        t0 = time.perf_counter()
        try:
            response = self._extraction_llm.invoke([
                SystemMessage(content="Extract information and return only valid JSON."),
                HumanMessage(content=prompt),
            ])
        except Exception as exc:
            metrics.record_failure(
                "anthropic", "extract_fields",
                error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            logger.warning("Field extraction failed: %s", exc)
            return {}
        metrics.record_success(
            "anthropic", "extract_fields",
            latency_ms=(time.perf_counter() - t0) * 1000,
        )

        match = _JSON_OBJECT.search(_text(response))
        if not match:
            return {}
        try:
            raw = json.loads(match.group(0))
        except ValueError:
            logger.warning("Field extraction returned invalid JSON: %r", match.group(0)[:200])
            return {}
        if not isinstance(raw, dict):
            return {}
        extracted: dict[str, str] = {}
        for key, value in raw.items():
            field = _FIELD_ALIASES.get(key, key)
            if field in PATIENT_FIELDS and field in missing and value not in (None, ""):
                extracted[field] = str(value).strip()
        logger.debug("Extracted fields: %s", sorted(extracted))
        return extracted
