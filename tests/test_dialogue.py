"""Tests for the dialogue completion service."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from frontdesk.models import ChatTurn
from frontdesk.services.dialogue import DialogueService, DialogueStepFailed


@pytest.fixture
def llm():
    mock = MagicMock()
    mock.invoke.return_value = AIMessage(content="  Hello! How can I help?  ")
    return mock


@pytest.fixture
def extraction_llm():
    return MagicMock()


@pytest.fixture
def service(llm, extraction_llm):
    return DialogueService(llm=llm, extraction_llm=extraction_llm)


class TestComplete:
    def test_returns_stripped_reply(self, service):
        assert service.complete([], "Greet the patient.") == "Hello! How can I help?"

    def test_instruction_goes_into_system_prompt(self, service, llm):
        service.complete([], "Ask for their phone number.")
        messages = llm.invoke.call_args[0][0]
        assert isinstance(messages[0], SystemMessage)
        assert "## Current step\nAsk for their phone number." in messages[0].content

    def test_history_is_replayed_in_order(self, service, llm):
        history = [
            ChatTurn(role="assistant", content="Hi there!"),
            ChatTurn(role="user", content="I want to book"),
        ]
        service.complete(history, "Ask if they visited before.")
        messages = llm.invoke.call_args[0][0]

        # An opener is inserted so the first non-system message is the user's
        assert isinstance(messages[1], HumanMessage)
        assert isinstance(messages[2], AIMessage)
        assert messages[2].content == "Hi there!"
        assert messages[3].content == "I want to book"

    def test_content_blocks_are_flattened(self, service, llm):
        llm.invoke.return_value = AIMessage(
            content=[{"type": "text", "text": "Hello "}, {"type": "text", "text": "again"}],
        )
        assert service.complete([], "x") == "Hello again"

    def test_model_error_raises_dialogue_step_failed(self, service, llm):
        llm.invoke.side_effect = RuntimeError("LLM exploded")
        with pytest.raises(DialogueStepFailed):
            service.complete([], "x")

    def test_empty_reply_raises_dialogue_step_failed(self, service, llm):
        llm.invoke.return_value = AIMessage(content="   ")
        with pytest.raises(DialogueStepFailed):
            service.complete([], "x")

    def test_greet_uses_the_model(self, service, llm):
        assert service.greet() == "Hello! How can I help?"
        llm.invoke.assert_called_once()


class TestExtractPatientFields:
    def test_parses_json_and_maps_aliases(self, service, extraction_llm):
        extraction_llm.invoke.return_value = AIMessage(
            content='Sure: {"firstName": "Ana", "last_name": "Lopez", "age": 34}',
        )
        fields = service.extract_patient_fields(
            "Ana Lopez, 34", "What is your name?", ["first_name", "last_name", "age"],
        )
        assert fields == {"first_name": "Ana", "last_name": "Lopez", "age": "34"}

    def test_drops_fields_that_are_not_missing(self, service, extraction_llm):
        extraction_llm.invoke.return_value = AIMessage(
            content='{"first_name": "Ana", "email": "ana@example.com"}',
        )
        fields = service.extract_patient_fields("...", "...", ["email"])
        assert fields == {"email": "ana@example.com"}

    def test_drops_unknown_and_empty_fields(self, service, extraction_llm):
        extraction_llm.invoke.return_value = AIMessage(
            content='{"favourite_colour": "blue", "gender": "", "dob": null}',
        )
        assert service.extract_patient_fields("...", "...", ["gender", "dob"]) == {}

    def test_invalid_json_yields_empty_dict(self, service, extraction_llm):
        extraction_llm.invoke.return_value = AIMessage(content="{not json}")
        assert service.extract_patient_fields("...", "...", ["email"]) == {}

    def test_model_error_yields_empty_dict(self, service, extraction_llm):
        extraction_llm.invoke.side_effect = RuntimeError("timeout")
        assert service.extract_patient_fields("...", "...", ["email"]) == {}
