"""
Batch processor: one complete cycle of the auto-reply pipeline.

    fetch unread → drop already-recorded → record system mail →
    classify (batched, falling back to one-by-one) → reply → record

Guarantees:
- The store is consulted before any message is classified or replied to,
  and again right before each batch, so overlapping cycles can't double-reply.
- Every message that gets past dedup ends up with exactly one record,
  whatever failed along the way.
- An exception while handling one message is recorded against that
  message; the cycle moves on to the next one.

The processor never fetches tokens or reads settings itself; everything is
injected, so tests can build it with fakes.

Usage:
    processor = BatchProcessor(mailbox, classifier, store, rules, batch_size=1)
    report = await processor.run_cycle()
    print(report.newly_processed)
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from mailpilot.graph.client import MailPermissionError, MailProvider, MailProviderError
from mailpilot.logging.audit import audit, sender_domain
from mailpilot.pipeline.classifier import Classifier
from mailpilot.pipeline.filters import check_system_mail
from mailpilot.pipeline.prompts import ensure_footer
from mailpilot.pipeline.rules import MailRules
from mailpilot.pipeline.schemas import (
    SYSTEM_CLASSIFICATION,
    ClassificationResult,
    CycleReport,
    ErrorKind,
    InboundMessage,
    ProcessedRecord,
    RecordStatus,
)
from mailpilot.storage.store import DuplicateRecordError, ProcessedStore

logger = logging.getLogger(__name__)

PERMISSION_REMEDIATION = (
    "Mailbox token lacks Mail.Send permission; the mailbox owner must sign in "
    "again to grant User.Read, Mail.ReadWrite, Mail.Send"
)


class BatchProcessor:
    """
    Runs fetch → filter → classify → reply → persist for one mailbox.
    """

    def __init__(
        self,
        mailbox: MailProvider,
        classifier: Classifier,
        store: ProcessedStore,
        rules: MailRules,
        fetch_limit: int = 20,
        batch_size: int = 1,
        batch_delay_seconds: float = 300.0,
        reply_footer: str = "",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        self._mail = mailbox
        self._classifier = classifier
        self._store = store
        self._rules = rules
        # The store key is the mailbox owner; it is fixed before any record exists.
        self._owner = store.mailbox
        self._fetch_limit = fetch_limit
        self._batch_size = batch_size
        self._batch_delay = batch_delay_seconds
        self._reply_footer = reply_footer
        self._sleep = sleep

        logger.info(
            "processor.initialized",
            extra={
                "action": "processor.initialized",
                "fetch_limit": fetch_limit,
                "batch_size": batch_size,
                "batch_delay_seconds": batch_delay_seconds,
            },
        )

    @property
    def owner_address(self) -> str:
        return self._owner

    # =========================================================================
    # CYCLE
    # =========================================================================

    async def run_cycle(self) -> CycleReport:
        """
        Run one cycle and report what happened.

        Raises whatever list_unread or the dedup lookup raises; those are
        cycle-level failures for the poller to log. Everything after that
        point is isolated per message.
        """
        start = time.monotonic()
        report = CycleReport(started_at=datetime.now(timezone.utc))

        messages = await self._mail.list_unread(self._fetch_limit)
        report.fetched = len(messages)

        already = await self._store.processed_ids(m.id for m in messages)
        report.already_processed = len(already)

        candidates: list[InboundMessage] = []
        seen: set[str] = set()
        for message in messages:
            if message.id in already or message.id in seen:
                continue
            seen.add(message.id)

            verdict = check_system_mail(message, self._rules, self._owner)
            if verdict.filtered:
                logger.debug(
                    "processor.system_mail",
                    extra={
                        "action": "processor.system_mail",
                        "message_id": message.id,
                        "reason": verdict.reason,
                        "detail": verdict.detail,
                    },
                )
                report.system += 1
                await self._record(
                    report,
                    message,
                    SYSTEM_CLASSIFICATION,
                    RecordStatus.PROCESSED,
                )
                continue

            candidates.append(message)

        batches = [
            candidates[i:i + self._batch_size]
            for i in range(0, len(candidates), self._batch_size)
        ]
        for index, batch in enumerate(batches):
            await self._process_batch(report, batch, index, len(batches))

            if index < len(batches) - 1 and self._batch_delay > 0:
                logger.info(
                    "processor.batch.pausing",
                    extra={
                        "action": "processor.batch.pausing",
                        "delay_seconds": self._batch_delay,
                        "remaining_batches": len(batches) - index - 1,
                    },
                )
                await self._sleep(self._batch_delay)

        report.duration_ms = int((time.monotonic() - start) * 1000)
        audit.info(
            "processor.cycle.completed",
            fetched=report.fetched,
            already_processed=report.already_processed,
            system=report.system,
            classified=report.classified,
            replied=report.replied,
            errors=report.errors,
            newly_processed=report.newly_processed,
            duration_ms=report.duration_ms,
        )
        return report

    # =========================================================================
    # BATCHES
    # =========================================================================

    async def _process_batch(
        self,
        report: CycleReport,
        batch: list[InboundMessage],
        index: int,
        total: int,
    ) -> None:
        # Another poller may have finished some of these since the fetch.
        fresh = []
        for message in batch:
            try:
                if await self._store.has_processed(message.id):
                    report.already_processed += 1
                    continue
            except Exception as e:
                self._log_message_error("processor.dedup_check.failed", message, e)
                report.errors += 1
                continue
            fresh.append(message)

        if not fresh:
            return

        logger.info(
            "processor.batch.started",
            extra={
                "action": "processor.batch.started",
                "batch": index + 1,
                "batches": total,
                "size": len(fresh),
            },
        )

        try:
            results = await self._classifier.classify_batch(fresh)
            if len(results) != len(fresh):
                raise ValueError(
                    f"classifier returned {len(results)} results for {len(fresh)} messages"
                )
        except Exception as e:
            logger.warning(
                "processor.batch.classify_failed",
                extra={
                    "action": "processor.batch.classify_failed",
                    "batch": index + 1,
                    "size": len(fresh),
                    "error_type": type(e).__name__,
                    "error": str(e)[:300],
                },
            )
            for message in fresh:
                await self._process_individually(report, message)
            return

        for message, result in zip(fresh, results):
            report.classified += 1
            await self._finish(report, message, result)

    async def _process_individually(self, report: CycleReport, message: InboundMessage) -> None:
        try:
            result = await self._classifier.classify(message)
        except Exception as e:
            self._log_message_error("processor.classify.failed", message, e)
            await self._record(
                report,
                message,
                None,
                RecordStatus.ERROR,
                error_kind=ErrorKind.CLASSIFICATION,
                error_detail=f"Classification failed: {type(e).__name__}: {e}",
            )
            return
        report.classified += 1
        await self._finish(report, message, result)

    # =========================================================================
    # REPLY + PERSIST
    # =========================================================================

    async def _finish(
        self,
        report: CycleReport,
        message: InboundMessage,
        result: ClassificationResult,
    ) -> None:
        """Send the reply if warranted, then write the one record for this message."""
        if not (result.should_reply and result.suggested_reply):
            await self._record(report, message, result, RecordStatus.PROCESSED)
            return

        reply = ensure_footer(result.suggested_reply, self._reply_footer)

        try:
            await self._mail.send_reply(message.id, reply)
        except MailPermissionError as e:
            logger.error(
                "processor.reply.permission_denied",
                extra={
                    "action": "processor.reply.permission_denied",
                    "message_id": message.id,
                    "status_code": e.status_code,
                    "code": e.code,
                    "remediation": PERMISSION_REMEDIATION,
                },
            )
            await self._record(
                report, message, result, RecordStatus.ERROR,
                reply_text=reply,
                error_kind=ErrorKind.PERMISSION,
                error_detail=f"{PERMISSION_REMEDIATION} ({e})",
            )
            return
        except MailProviderError as e:
            self._log_message_error("processor.reply.failed", message, e)
            await self._record(
                report, message, result, RecordStatus.ERROR,
                reply_text=reply,
                error_kind=ErrorKind.TRANSPORT,
                error_detail=f"Reply failed: {e}",
            )
            return
        except Exception as e:
            self._log_message_error("processor.reply.failed", message, e)
            await self._record(
                report, message, result, RecordStatus.ERROR,
                reply_text=reply,
                error_kind=ErrorKind.INTERNAL,
                error_detail=f"Reply failed: {type(e).__name__}: {e}",
            )
            return

        report.replied += 1
        audit.info(
            "processor.reply.sent",
            message_id=message.id,
            category=result.category.value,
            priority=result.priority.value,
            source=result.source,
            recipient_domain=sender_domain(message.sender_address),
        )

        # The reply is out; a mark-read failure is noted but doesn't undo that.
        detail = None
        try:
            await self._mail.mark_read(message.id)
        except Exception as e:
            self._log_message_error("processor.mark_read.failed", message, e)
            detail = f"Reply sent but mark-read failed: {e}"

        await self._record(
            report, message, result, RecordStatus.REPLIED,
            reply_text=reply,
            error_detail=detail,
        )

    async def _record(
        self,
        report: CycleReport,
        message: InboundMessage,
        classification: Optional[ClassificationResult],
        status: RecordStatus,
        reply_text: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        error_detail: Optional[str] = None,
    ) -> None:
        if status == RecordStatus.ERROR:
            report.errors += 1

        record = ProcessedRecord(
            message_id=message.id,
            mailbox=self._store.mailbox,
            subject=message.subject,
            sender_address=message.sender_address,
            sender_name=message.sender_name,
            classification=classification,
            reply_text=reply_text,
            processed_at=datetime.now(timezone.utc),
            status=status,
            error_kind=error_kind,
            error_detail=error_detail,
        )

        try:
            await self._store.record_outcome(record)
        except DuplicateRecordError:
            # Another poller recorded it between our check and our write.
            logger.warning(
                "processor.record.duplicate",
                extra={"action": "processor.record.duplicate", "message_id": message.id},
            )
            return
        except Exception as e:
            self._log_message_error("processor.record.failed", message, e)
            return

        report.newly_processed += 1
        audit.info(
            "processor.record.saved",
            message_id=message.id,
            status=status.value,
            category=classification.category.value if classification else None,
            error_kind=error_kind.value if error_kind else None,
        )

    @staticmethod
    def _log_message_error(action: str, message: InboundMessage, error: Exception) -> None:
        logger.error(
            action,
            extra={
                "action": action,
                "message_id": message.id,
                "error_type": type(error).__name__,
                "error": str(error)[:500],
            },
        )
