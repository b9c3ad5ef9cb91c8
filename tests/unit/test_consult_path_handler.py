"""
Unit tests for consult_path_handler.py.

Tests coverage:
- detect_path_choice() classification
- Field updates per choice
- Lock semantics and explicit switch words
- apply_only mode leaves the reply to the caller
- Pipeline failures never fail the choice
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from agent.routing.consult_path_handler import (
    MESSAGE_CHOICE,
    MESSAGE_REPLY,
    TRANSLATOR_CHOICE,
    TRANSLATOR_QUESTION,
    TRANSLATOR_QUESTION_REPLY,
    TRANSLATOR_REPLY,
    ConsultPathHandler,
    detect_path_choice,
)
from agent.services.pipeline_service import PipelineStage
from agent.state import field_keys as fk
from agent.state.canonical_state import build_canonical_state


@pytest.fixture
def pipeline():
    mock = MagicMock()
    mock.transition_to_stage = AsyncMock()
    return mock


@pytest.fixture
def handler(pipeline):
    return ConsultPathHandler(pipeline=pipeline)


class TestDetectPathChoice:
    @pytest.mark.parametrize(
        "text",
        ["Messages are fine", "I prefer chat", "can we do the consult here?"],
    )
    def test_message(self, text):
        assert detect_path_choice(text) == MESSAGE_CHOICE

    @pytest.mark.parametrize(
        "text",
        ["Video call works", "translator is fine", "a live call please"],
    )
    def test_translator(self, text):
        assert detect_path_choice(text) == TRANSLATOR_CHOICE

    def test_question_about_translator(self):
        assert detect_path_choice("why do I need a translator?") == TRANSLATOR_QUESTION

    def test_negated_messages_is_not_message(self):
        assert detect_path_choice("video instead of messages") == TRANSLATOR_CHOICE

    def test_unrelated(self):
        assert detect_path_choice("a rose on my forearm") is None
        assert detect_path_choice(None) is None


class TestHandlePathChoice:
    @pytest.mark.asyncio
    async def test_message_choice(self, handler, pipeline, make_contact):
        contact = make_contact()
        result = await handler.handle_path_choice(
            contact, build_canonical_state({}), "messages please"
        )

        assert result.choice == MESSAGE_CHOICE
        assert result.reply == MESSAGE_REPLY
        assert result.field_updates[fk.CONSULTATION_TYPE] == "message"
        assert result.field_updates[fk.CONSULTATION_TYPE_LOCKED] is True
        assert result.field_updates[fk.TRANSLATOR_NEEDED] is False
        assert pipeline.transition_to_stage.call_args.args[1] == PipelineStage.CONSULT_MESSAGE

    @pytest.mark.asyncio
    async def test_translator_choice(self, handler, pipeline, make_contact):
        result = await handler.handle_path_choice(
            make_contact(), build_canonical_state({}), "video call is great"
        )

        assert result.reply == TRANSLATOR_REPLY
        assert result.field_updates[fk.CONSULTATION_TYPE] == "appointment"
        assert result.field_updates[fk.TRANSLATOR_NEEDED] is True
        assert result.field_updates[fk.TRANSLATOR_EXPLAINED] is True
        stage = pipeline.transition_to_stage.call_args.args[1]
        assert stage == PipelineStage.CONSULT_APPOINTMENT

    @pytest.mark.asyncio
    async def test_apply_only_has_no_reply(self, handler, make_contact):
        result = await handler.handle_path_choice(
            make_contact(), build_canonical_state({}), "video call", apply_only=True
        )
        assert result.reply is None
        assert result.field_updates[fk.CONSULTATION_TYPE] == "appointment"

    @pytest.mark.asyncio
    async def test_translator_question_has_no_pipeline_move(self, handler, pipeline, make_contact):
        result = await handler.handle_path_choice(
            make_contact(), build_canonical_state({}), "why a translator?"
        )
        assert result.reply == TRANSLATOR_QUESTION_REPLY
        assert result.field_updates == {fk.LANGUAGE_BARRIER_EXPLAINED: True}
        pipeline.transition_to_stage.assert_not_called()

    @pytest.mark.asyncio
    async def test_locked_choice_is_ignored(self, handler, make_contact):
        state = build_canonical_state({
            fk.CONSULTATION_TYPE: "appointment",
            fk.CONSULTATION_TYPE_LOCKED: "Yes",
        })
        assert await handler.handle_path_choice(make_contact(), state, "messages") is None

    @pytest.mark.asyncio
    async def test_switch_word_overrides_lock(self, handler, make_contact):
        state = build_canonical_state({
            fk.CONSULTATION_TYPE: "appointment",
            fk.CONSULTATION_TYPE_LOCKED: "Yes",
        })
        result = await handler.handle_path_choice(
            make_contact(), state, "actually messages would be easier"
        )
        assert result.choice == MESSAGE_CHOICE

    @pytest.mark.asyncio
    async def test_pipeline_failure_is_swallowed(self, handler, pipeline, make_contact):
        pipeline.transition_to_stage.side_effect = RuntimeError("crm down")
        result = await handler.handle_path_choice(
            make_contact(), build_canonical_state({}), "messages"
        )
        assert result.choice == MESSAGE_CHOICE
