"""
Wiring: turns Settings into a running pipeline.

This is the only place that reads configuration and constructs the
concrete mailbox, classifier, store, processor and poller. Everything
downstream receives its collaborators through constructors.

Usage:
    pipeline = await build_pipeline(get_settings())
    await pipeline.poller.start()
    ...
    await pipeline.aclose()
"""

import logging
from dataclasses import dataclass
from typing import Optional

from mailpilot.config import Settings
from mailpilot.graph.client import GraphMailbox, MailProvider
from mailpilot.graph.ratelimit import RateLimiter
from mailpilot.llm.client import LLMClient
from mailpilot.pipeline.classifier import build_classifier
from mailpilot.pipeline.poller import Poller
from mailpilot.pipeline.processor import BatchProcessor
from mailpilot.pipeline.prompts import load_knowledge_excerpt
from mailpilot.pipeline.rules import MailRules
from mailpilot.storage.store import ProcessedStore

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """The live components, owned by the application for its lifetime."""

    mailbox: MailProvider
    store: ProcessedStore
    processor: BatchProcessor
    poller: Poller
    llm: Optional[LLMClient] = None

    async def aclose(self) -> None:
        """Stop polling, then release HTTP clients and the database pool."""
        await self.poller.stop()
        close = getattr(self.mailbox, "aclose", None)
        if close is not None:
            await close()
        if self.llm is not None:
            await self.llm.aclose()
        self.store.dispose()
        logger.info("pipeline.closed", extra={"action": "pipeline.closed"})


async def build_pipeline(settings: Settings) -> Pipeline:
    """
    Construct every component from settings.

    Raises:
        RulesConfigError: if the rules file is unusable.
        ValueError: if the classifier backend is misconfigured.
        RuntimeError: if the mailbox owner address cannot be determined.
        SQLAlchemyError: if the database cannot be initialized.
    """
    if settings.classifier_backend == "llm" and not settings.anthropic_api_key:
        raise ValueError("ANTHROPIC_API_KEY is required when CLASSIFIER_BACKEND=llm")

    rules = MailRules.from_yaml(settings.rules_config_path)

    limiter = RateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
        max_concurrent=settings.rate_limit_concurrency,
    )
    mailbox = GraphMailbox(
        access_token=settings.mailbox_access_token,
        rate_limiter=limiter,
        base_url=settings.graph_base_url,
        unread_fallback=settings.unread_fallback,
        timeout_seconds=settings.http_timeout_seconds,
    )

    owner = settings.mailbox_owner_address or await mailbox.get_owner_address()
    owner = (owner or "").lower().strip()
    if not owner:
        await mailbox.aclose()
        logger.error(
            "pipeline.owner_unknown",
            extra={"action": "pipeline.owner_unknown"},
        )
        raise RuntimeError(
            "Mailbox owner address is unknown: /me could not be read. "
            "Set MAILBOX_OWNER_ADDRESS or grant User.Read."
        )

    store = ProcessedStore.from_url(settings.database_url, mailbox=owner)

    llm = None
    if settings.classifier_backend == "llm":
        llm = LLMClient(
            api_key=settings.anthropic_api_key,
            model=settings.anthropic_model,
            max_retries=settings.llm_max_retries,
            timeout_seconds=settings.llm_timeout_seconds,
        )

    classifier = build_classifier(
        settings.classifier_backend,
        rules=rules,
        llm_client=llm,
        institution=settings.institution_name,
        instructions=settings.institution_instructions,
        knowledge=load_knowledge_excerpt(
            settings.knowledge_base_path, settings.knowledge_base_max_chars
        ),
        max_tokens=settings.anthropic_max_tokens_classify,
        max_tokens_batch=settings.anthropic_max_tokens_batch,
    )

    processor = BatchProcessor(
        mailbox=mailbox,
        classifier=classifier,
        store=store,
        rules=rules,
        fetch_limit=settings.fetch_limit,
        batch_size=settings.batch_size,
        batch_delay_seconds=settings.batch_delay_seconds,
        reply_footer=settings.reply_footer,
    )
    poller = Poller(
        processor,
        interval_seconds=settings.poll_interval_seconds,
        adaptive=settings.adaptive_polling,
        max_interval_seconds=settings.max_poll_interval_seconds,
        empty_checks_before_backoff=settings.empty_checks_before_backoff,
    )

    logger.info(
        "pipeline.built",
        extra={
            "action": "pipeline.built",
            "classifier_backend": settings.classifier_backend,
            "batch_size": settings.batch_size,
            "poll_interval_seconds": settings.poll_interval_seconds,
        },
    )
    return Pipeline(mailbox=mailbox, store=store, processor=processor, poller=poller, llm=llm)
