"""
Message classifiers.

Two implementations of one capability, chosen once at construction time:

- KeywordClassifier: deterministic word-list matching. Never fails.
- LLMClassifier: asks the LLM for a JSON decision plus a drafted reply.
  Any failure (API error, prose instead of JSON, wrong shape) downgrades
  to the KeywordClassifier for that message. It never raises.

Usage:
    classifier = build_classifier("llm", rules=rules, llm_client=llm, institution="Admissions")
    result = await classifier.classify(message)
    results = await classifier.classify_batch(messages)
"""

import logging
from typing import Literal, Optional, Protocol

from mailpilot.llm.client import LLMClient
from mailpilot.pipeline import prompts
from mailpilot.pipeline.rules import MailRules
from mailpilot.pipeline.schemas import (
    Category,
    ClassificationResult,
    InboundMessage,
    Priority,
)

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    async def classify(self, message: InboundMessage) -> ClassificationResult: ...

    async def classify_batch(self, messages: list[InboundMessage]) -> list[ClassificationResult]: ...


class KeywordClassifier:
    """
    Deterministic fallback classifier.

    Category: first of question/complaint/support/spam (in rules order)
    whose keywords appear in the subject or body, else "general".
    shouldReply is True unless the category is spam. Priority is "medium",
    "high" for complaints, "low" for spam.
    """

    CONFIDENCE = 0.8

    def __init__(self, rules: MailRules, institution: str = "Admissions Office"):
        self._rules = rules
        self._institution = institution

    def classify_sync(self, message: InboundMessage) -> ClassificationResult:
        text = f"{message.subject}\n{message.body or message.body_preview}".lower()

        category = Category.GENERAL
        for name, words in self._rules.category_keywords.items():
            if any(w in text for w in words):
                try:
                    category = Category(name)
                except ValueError:
                    continue
                break

        should_reply = category != Category.SPAM
        if category == Category.COMPLAINT:
            priority = Priority.HIGH
        elif category == Category.SPAM:
            priority = Priority.LOW
        else:
            priority = Priority.MEDIUM

        reply = None
        if should_reply:
            template = self._rules.reply_templates.get(
                category.value, self._rules.reply_templates.get("general", "")
            )
            reply = template.replace("{institution}", self._institution) or None

        return ClassificationResult(
            should_reply=should_reply,
            priority=priority,
            category=category,
            confidence=self.CONFIDENCE,
            suggested_reply=reply,
            source="keyword",
        )

    async def classify(self, message: InboundMessage) -> ClassificationResult:
        return self.classify_sync(message)

    async def classify_batch(self, messages: list[InboundMessage]) -> list[ClassificationResult]:
        return [self.classify_sync(m) for m in messages]


class LLMClassifier:
    """
    LLM-backed classifier with a keyword safety net.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        fallback: KeywordClassifier,
        institution: str = "Admissions Office",
        instructions: str = "",
        knowledge: str = "",
        max_tokens: int = 600,
        max_tokens_batch: int = 2000,
    ):
        self._llm = llm_client
        self._fallback = fallback
        self._system = prompts.build_system_prompt(institution, instructions, knowledge)
        self._max_tokens = max_tokens
        self._max_tokens_batch = max_tokens_batch

    async def classify(self, message: InboundMessage) -> ClassificationResult:
        try:
            result = await self._llm.complete(
                system=self._system,
                user=prompts.build_classify_prompt(message),
                max_tokens=self._max_tokens,
                purpose="classify",
            )
            return prompts.parse_classification(result.text)
        except Exception as e:
            logger.warning(
                "classifier.fallback",
                extra={
                    "action": "classifier.fallback",
                    "message_id": message.id,
                    "error_type": type(e).__name__,
                    "error": str(e)[:300],
                },
            )
            return self._fallback.classify_sync(message)

    async def classify_batch(self, messages: list[InboundMessage]) -> list[ClassificationResult]:
        """
        Classify several messages with one LLM call.

        If the batched call fails outright, every message is classified
        individually. If it succeeds but some messages are missing from
        the answer, only those are classified individually.
        """
        if not messages:
            return []
        if len(messages) == 1:
            return [await self.classify(messages[0])]

        by_id: dict[str, ClassificationResult] = {}
        try:
            result = await self._llm.complete(
                system=self._system,
                user=prompts.build_batch_prompt(messages),
                max_tokens=self._max_tokens_batch,
                purpose="classify_batch",
            )
            by_id = prompts.parse_batch(result.text)
        except Exception as e:
            logger.warning(
                "classifier.batch_failed",
                extra={
                    "action": "classifier.batch_failed",
                    "batch_size": len(messages),
                    "error_type": type(e).__name__,
                    "error": str(e)[:300],
                },
            )

        results = []
        missing = 0
        for message in messages:
            found = by_id.get(message.id)
            if found is None:
                missing += 1
                found = await self.classify(message)
            results.append(found)

        if missing and by_id:
            logger.info(
                "classifier.batch_partial",
                extra={
                    "action": "classifier.batch_partial",
                    "batch_size": len(messages),
                    "reclassified": missing,
                },
            )
        return results


def build_classifier(
    backend: Literal["llm", "keyword"],
    rules: MailRules,
    llm_client: Optional[LLMClient] = None,
    institution: str = "Admissions Office",
    instructions: str = "",
    knowledge: str = "",
    max_tokens: int = 600,
    max_tokens_batch: int = 2000,
) -> Classifier:
    """Pick the classifier implementation from configuration."""
    keyword = KeywordClassifier(rules, institution=institution)
    if backend == "keyword":
        return keyword
    if backend == "llm":
        if llm_client is None:
            raise ValueError("classifier backend 'llm' needs an LLMClient")
        return LLMClassifier(
            llm_client,
            fallback=keyword,
            institution=institution,
            instructions=instructions,
            knowledge=knowledge,
            max_tokens=max_tokens,
            max_tokens_batch=max_tokens_batch,
        )
    raise ValueError(f"Unknown classifier backend: {backend!r}")
