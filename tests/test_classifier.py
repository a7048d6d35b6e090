"""
Tests for the keyword and LLM classifiers.

The LLM client is an AsyncMock; no API calls are made.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from mailpilot.llm.client import LLMError, LLMResult
from mailpilot.pipeline.classifier import (
    KeywordClassifier,
    LLMClassifier,
    build_classifier,
)
from mailpilot.pipeline.rules import MailRules
from mailpilot.pipeline.schemas import Category, Priority


def llm_result(text: str) -> LLMResult:
    return LLMResult(
        text=text,
        input_tokens=10,
        output_tokens=10,
        total_tokens=20,
        cost=0.0,
        latency_ms=5,
        model="test-model",
    )


def make_llm(*texts_or_errors) -> MagicMock:
    llm = MagicMock()
    llm.complete = AsyncMock(side_effect=[
        t if isinstance(t, Exception) else llm_result(t) for t in texts_or_errors
    ])
    return llm


@pytest.fixture
def keyword() -> KeywordClassifier:
    return KeywordClassifier(MailRules(), institution="Admissions Office")


class TestKeywordClassifier:
    def test_portuguese_complaint(self, keyword, make_message):
        msg = make_message(subject="Reclamação sobre matrícula", body="Estou insatisfeito.")
        result = keyword.classify_sync(msg)
        assert result.category == Category.COMPLAINT
        assert result.priority == Priority.HIGH
        assert result.should_reply is True
        assert result.source == "keyword"
        assert result.confidence == pytest.approx(0.8)

    def test_question(self, keyword, make_message):
        result = keyword.classify_sync(make_message(subject="Enrollment", body="How do I apply?"))
        assert result.category == Category.QUESTION
        assert result.priority == Priority.MEDIUM

    def test_question_wins_over_complaint(self, keyword, make_message):
        """Categories are checked in order; the first hit wins."""
        msg = make_message(subject="Question", body="There is a problem with my form")
        assert keyword.classify_sync(msg).category == Category.QUESTION

    def test_spam_gets_no_reply(self, keyword, make_message):
        msg = make_message(subject="Limited offer", body="Huge desconto today")
        result = keyword.classify_sync(msg)
        assert result.category == Category.SPAM
        assert result.should_reply is False
        assert result.priority == Priority.LOW
        assert result.suggested_reply is None

    def test_general_when_nothing_matches(self, keyword, make_message):
        result = keyword.classify_sync(make_message(subject="Hi", body="Greetings."))
        assert result.category == Category.GENERAL
        assert result.should_reply is True

    def test_reply_names_institution(self, keyword, make_message):
        result = keyword.classify_sync(make_message(subject="Hi", body="Greetings."))
        assert "Admissions Office" in result.suggested_reply
        assert "{institution}" not in result.suggested_reply

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self, keyword, make_message):
        msgs = [
            make_message(id="1", subject="Limited offer", body="newsletter"),
            make_message(id="2", subject="Hi", body="Greetings."),
        ]
        results = await keyword.classify_batch(msgs)
        assert [r.category for r in results] == [Category.SPAM, Category.GENERAL]


class TestLLMClassifier:
    @pytest.mark.asyncio
    async def test_parses_fenced_json(self, keyword, make_message):
        llm = make_llm(
            '```json\n{"shouldReply": true, "priority": "medium", "category": "question", '
            '"confidence": 0.9, "suggestedReply": "The deadline is March 1."}\n```'
        )
        classifier = LLMClassifier(llm, fallback=keyword, institution="Admissions")

        result = await classifier.classify(make_message())

        assert result.source == "llm"
        assert result.suggested_reply == "The deadline is March 1."
        kwargs = llm.complete.call_args.kwargs
        assert kwargs["purpose"] == "classify"
        assert "Admissions" in kwargs["system"]

    @pytest.mark.asyncio
    async def test_prose_response_falls_back_to_keywords(self, keyword, make_message):
        llm = make_llm("Sure! This looks like a complaint to me.")
        classifier = LLMClassifier(llm, fallback=keyword)

        msg = make_message(subject="Reclamação", body="Nada funciona")
        result = await classifier.classify(msg)

        assert result.source == "keyword"
        assert result.category == Category.COMPLAINT
        assert result.priority == Priority.HIGH
        assert result.should_reply is True

    @pytest.mark.asyncio
    async def test_llm_error_falls_back(self, keyword, make_message):
        classifier = LLMClassifier(make_llm(LLMError("down")), fallback=keyword)
        result = await classifier.classify(make_message())
        assert result.source == "keyword"

    @pytest.mark.asyncio
    async def test_single_message_batch_uses_single_prompt(self, keyword, make_message):
        llm = make_llm('{"shouldReply": false, "category": "general"}')
        classifier = LLMClassifier(llm, fallback=keyword)

        results = await classifier.classify_batch([make_message()])

        assert len(results) == 1
        assert llm.complete.call_args.kwargs["purpose"] == "classify"

    @pytest.mark.asyncio
    async def test_batch_answer_mapped_by_id(self, keyword, make_message):
        llm = make_llm(
            '{"results": ['
            '{"id": "b", "shouldReply": false, "category": "spam"},'
            '{"id": "a", "shouldReply": true, "category": "question", "suggestedReply": "Hi"}'
            "]}"
        )
        classifier = LLMClassifier(llm, fallback=keyword)

        results = await classifier.classify_batch([make_message(id="a"), make_message(id="b")])

        assert [r.category for r in results] == [Category.QUESTION, Category.SPAM]
        assert llm.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_ids_classified_individually(self, keyword, make_message):
        llm = make_llm(
            '{"results": [{"id": "a", "shouldReply": true, "category": "question"}]}',
            '{"shouldReply": true, "category": "support", "suggestedReply": "On it."}',
        )
        classifier = LLMClassifier(llm, fallback=keyword)

        results = await classifier.classify_batch([make_message(id="a"), make_message(id="b")])

        assert results[0].category == Category.QUESTION
        assert results[1].category == Category.SUPPORT
        assert llm.complete.await_count == 2
        assert llm.complete.call_args.kwargs["purpose"] == "classify"

    @pytest.mark.asyncio
    async def test_failed_batch_call_classifies_each(self, keyword, make_message):
        llm = make_llm(
            LLMError("batch too big"),
            '{"shouldReply": true, "category": "question"}',
            LLMError("still down"),
        )
        classifier = LLMClassifier(llm, fallback=keyword)

        results = await classifier.classify_batch([
            make_message(id="a"),
            make_message(id="b", subject="Hi", body="Greetings."),
        ])

        assert results[0].source == "llm"
        assert results[1].source == "keyword"
        assert llm.complete.await_count == 3


class TestBuildClassifier:
    def test_keyword_backend(self):
        assert isinstance(build_classifier("keyword", MailRules()), KeywordClassifier)

    def test_llm_backend(self):
        classifier = build_classifier("llm", MailRules(), llm_client=make_llm())
        assert isinstance(classifier, LLMClassifier)

    def test_llm_backend_needs_client(self):
        with pytest.raises(ValueError):
            build_classifier("llm", MailRules())

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_classifier("magic", MailRules())
